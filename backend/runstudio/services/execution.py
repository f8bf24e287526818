"""
Execution state machine for model runs.

``transition`` is the whole state diagram as a lookup table. The
``ExecutionController`` drives it: it submits a run through the job client,
then polls the generation on a background task until it reaches a terminal
status or runs out of attempts.

    idle -> preparing -> submitting -> processing -> completed | failed

Waiting between polls goes through an injected scheduler so tests can run the
full attempt limit without wall-clock delays.
"""
import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from runstudio.core.config import settings
from runstudio.core.errors import (
    InsufficientCreditsError,
    InvalidTransition,
    NetworkError,
    ServerError,
    UnauthorizedError,
)
from runstudio.schemas import ExecutionSnapshot, Generation, GenerationStatus
from runstudio.services.job_client import JobClient

logger = logging.getLogger(__name__)

EMPTY_INPUT_MESSAGE = "Input parameters are required"
GENERATION_FAILED_MESSAGE = "Generation failed"
CANCELLED_MESSAGE = "Generation was cancelled"
TIMEOUT_MESSAGE = "Generation timeout - please check your history for results"

UNAUTHORIZED_MESSAGE = "Session expired. Please login again."
NETWORK_MESSAGE = "Network connection failed. Please check your internet connection."
INSUFFICIENT_CREDITS_MESSAGE = "You don't have enough credits for this operation."
MODEL_NOT_FOUND_MESSAGE = "This model is no longer available."
MODEL_INACTIVE_MESSAGE = "This model is currently unavailable."


class ExecutionState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    SUBMITTING = "submitting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED)


class ExecutionEvent(str, Enum):
    START = "start"
    REJECT = "reject"
    SUBMIT = "submit"
    ACCEPTED = "accepted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    RESET = "reset"


class FailureKind(str, Enum):
    VALIDATION = "validation"
    AUTHORIZATION = "authorization"
    TRANSPORT = "transport"
    DOMAIN = "domain"
    SERVER = "server"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


def _build_transitions() -> Dict[Tuple[ExecutionState, ExecutionEvent], ExecutionState]:
    S, E = ExecutionState, ExecutionEvent
    table = {
        (S.PREPARING, E.REJECT): S.FAILED,
        (S.PREPARING, E.SUBMIT): S.SUBMITTING,
        (S.SUBMITTING, E.ACCEPTED): S.PROCESSING,
        (S.SUBMITTING, E.SUCCEEDED): S.COMPLETED,
        (S.SUBMITTING, E.FAILED): S.FAILED,
        (S.PROCESSING, E.SUCCEEDED): S.COMPLETED,
        (S.PROCESSING, E.FAILED): S.FAILED,
        (S.PROCESSING, E.TIMED_OUT): S.FAILED,
    }
    for state in S:
        # A new run supersedes whatever the previous one was doing
        table[(state, E.START)] = S.PREPARING
        table[(state, E.RESET)] = S.IDLE
    return table


TRANSITIONS = _build_transitions()


def transition(state: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(f"{event.value} is not valid in state {state.value}")


def classify_error(error: Exception) -> Tuple[str, FailureKind]:
    """Map a submission failure to the message shown to the user."""
    if isinstance(error, UnauthorizedError):
        return UNAUTHORIZED_MESSAGE, FailureKind.AUTHORIZATION
    if isinstance(error, NetworkError):
        return NETWORK_MESSAGE, FailureKind.TRANSPORT
    if isinstance(error, InsufficientCreditsError):
        return INSUFFICIENT_CREDITS_MESSAGE, FailureKind.DOMAIN
    if isinstance(error, ServerError):
        message = error.message
        if "Insufficient credits" in message:
            return INSUFFICIENT_CREDITS_MESSAGE, FailureKind.DOMAIN
        if "Model not found" in message:
            return MODEL_NOT_FOUND_MESSAGE, FailureKind.DOMAIN
        if "not active" in message:
            return MODEL_INACTIVE_MESSAGE, FailureKind.DOMAIN
        return message, FailureKind.SERVER
    return str(error) or error.__class__.__name__, FailureKind.SERVER


class Scheduler(Protocol):
    async def sleep(self, seconds: float) -> None: ...


class AsyncioScheduler:
    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class DebitSink(Protocol):
    def apply_debit(self, amount: int) -> None: ...


class ExecutionController:
    """Owns at most one submission and one poll loop at a time."""

    def __init__(
        self,
        client: JobClient,
        scheduler: Optional[Scheduler] = None,
        ledger: Optional[DebitSink] = None,
        poll_interval: float = settings.POLL_INTERVAL,
        max_attempts: int = settings.POLL_MAX_ATTEMPTS,
        recent_limit: int = settings.RECENT_LIMIT,
    ):
        self.client = client
        self.scheduler = scheduler or AsyncioScheduler()
        self.ledger = ledger
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.recent_limit = recent_limit

        self.state = ExecutionState.IDLE
        self.error: Optional[str] = None
        self.failure_kind: Optional[FailureKind] = None
        self.result: Optional[Generation] = None
        self.recent: List[Generation] = []
        self.model_id: Optional[str] = None

        self._epoch = 0
        self._submit_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None

    # === State ===

    def _apply(self, event: ExecutionEvent):
        previous = self.state
        self.state = transition(self.state, event)
        logger.info("Execution %s -> %s (%s)", previous.value, self.state.value, event.value)

    def _fail(self, event: ExecutionEvent, message: str, kind: FailureKind):
        self.error = message
        self.failure_kind = kind
        self._apply(event)

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._epoch and self.state == ExecutionState.PROCESSING

    def _finish(self, generation: Generation):
        status = generation.status
        if status == GenerationStatus.COMPLETED:
            self._apply(ExecutionEvent.SUCCEEDED)
        elif status == GenerationStatus.CANCELLED:
            self._fail(ExecutionEvent.FAILED, CANCELLED_MESSAGE, FailureKind.CANCELLED)
        else:
            self._fail(ExecutionEvent.FAILED, generation.errorMessage or GENERATION_FAILED_MESSAGE, FailureKind.SERVER)

    @property
    def is_busy(self) -> bool:
        return self.state in (ExecutionState.PREPARING, ExecutionState.SUBMITTING, ExecutionState.PROCESSING)

    def snapshot(self) -> ExecutionSnapshot:
        return ExecutionSnapshot(
            state=self.state.value,
            error=self.error,
            failureKind=self.failure_kind.value if self.failure_kind else None,
            result=self.result,
            recent=list(self.recent),
        )

    # === Running ===

    async def execute(self, model_id: str, input: Dict[str, Any], title: Optional[str] = None,
                      tags: Optional[List[str]] = None) -> ExecutionState:
        """
        Submit a run. Returns once the submission call has resolved; polling,
        if the run is still going, continues on a background task (see wait()).
        """
        self.cancel()
        epoch = self._epoch
        self.model_id = model_id
        self.error = None
        self.failure_kind = None
        self._apply(ExecutionEvent.START)

        if not input:
            self._fail(ExecutionEvent.REJECT, EMPTY_INPUT_MESSAGE, FailureKind.VALIDATION)
            return self.state

        self._apply(ExecutionEvent.SUBMIT)
        self._submit_task = asyncio.create_task(self._submit(epoch, model_id, input, title, tags))
        await asyncio.wait([self._submit_task])
        return self.state

    async def _submit(self, epoch: int, model_id: str, input: Dict[str, Any],
                      title: Optional[str], tags: Optional[List[str]]):
        try:
            generation = await self.client.submit(model_id, input, title=title, tags=tags)
        except Exception as e:
            if epoch != self._epoch:
                return
            message, kind = classify_error(e)
            logger.error("Error executing model %s: %s", model_id, e)
            now = datetime.now(timezone.utc).isoformat()
            self.result = Generation(
                id=str(uuid.uuid4()),
                modelId=model_id,
                status=GenerationStatus.FAILED,
                input=input,
                errorMessage=message,
                creditsUsed=0,
                title=title,
                tags=tags,
                createdAt=now,
                updatedAt=now,
            )
            self._fail(ExecutionEvent.FAILED, message, kind)
            return

        if epoch != self._epoch:
            return
        self.result = generation
        if self.ledger is not None and generation.creditsUsed:
            self.ledger.apply_debit(generation.creditsUsed)

        if generation.is_running:
            self._apply(ExecutionEvent.ACCEPTED)
            self._poll_task = asyncio.create_task(self._poll(epoch, generation.id))
        else:
            self._finish(generation)
            await self.load_recent(model_id)

    async def _poll(self, epoch: int, generation_id: str):
        attempts = 0
        while attempts < self.max_attempts:
            await self.scheduler.sleep(self.poll_interval)
            if not self._is_current(epoch):
                return
            try:
                updated = await self.client.fetch_status(generation_id)
            except Exception as e:
                logger.warning("Error polling generation %s (attempt %d): %s", generation_id, attempts + 1, e)
                attempts += 1
                continue

            # Superseded or already terminal: discard the late response
            if not self._is_current(epoch):
                return
            if not updated.input and self.result is not None:
                updated = updated.model_copy(update={"input": self.result.input})
            self.result = updated
            logger.debug("Poll %d for %s: %s", attempts + 1, generation_id, updated.status.value)

            if updated.is_finished:
                self._finish(updated)
                await self.load_recent(self.model_id)
                return
            attempts += 1

        if self._is_current(epoch):
            logger.warning("Generation %s still running after %d attempts", generation_id, attempts)
            if self.result is not None:
                self.result = self.result.model_copy(
                    update={"status": GenerationStatus.FAILED, "errorMessage": TIMEOUT_MESSAGE}
                )
            self._fail(ExecutionEvent.TIMED_OUT, TIMEOUT_MESSAGE, FailureKind.TIMEOUT)

    async def wait(self):
        """Block until the current poll loop, if any, has ended."""
        task = self._poll_task
        if task is not None:
            await asyncio.wait([task])

    async def run(self, model_id: str, input: Dict[str, Any], title: Optional[str] = None,
                  tags: Optional[List[str]] = None) -> ExecutionState:
        await self.execute(model_id, input, title=title, tags=tags)
        await self.wait()
        return self.state

    async def regenerate(self) -> ExecutionState:
        """Re-submit the stored input of the last terminal generation, with the same title and tags."""
        prior = self.result
        if prior is None or not self.state.is_terminal:
            logger.info("Nothing to regenerate (state=%s)", self.state.value)
            return self.state
        return await self.execute(
            self.model_id or prior.modelId,
            copy.deepcopy(prior.input),
            title=prior.title,
            tags=list(prior.tags) if prior.tags is not None else None,
        )

    # === Side channels ===

    async def toggle_favorite(self) -> Optional[Generation]:
        result = self.result
        if result is None:
            return None
        try:
            updated = await self.client.update_generation(result.id, is_favorite=not result.isFavorite)
        except Exception as e:
            logger.error("Error toggling favorite on %s: %s", result.id, e)
            return self.result

        flag = updated.isFavorite
        if self.result is not None and self.result.id == result.id:
            self.result = self.result.model_copy(update={"isFavorite": flag})
        self.recent = [g.model_copy(update={"isFavorite": flag}) if g.id == result.id else g for g in self.recent]
        return self.result

    async def update_metadata(self, title: Optional[str] = None,
                              tags: Optional[List[str]] = None) -> Optional[Generation]:
        """Rename or retag the current result. Only the edited fields are copied back."""
        result = self.result
        if result is None or (title is None and tags is None):
            return result
        try:
            updated = await self.client.update_generation(result.id, title=title, tags=tags)
        except Exception as e:
            logger.error("Error updating generation %s: %s", result.id, e)
            return self.result

        changes = {}
        if title is not None:
            changes["title"] = updated.title
        if tags is not None:
            changes["tags"] = updated.tags
        if self.result is not None and self.result.id == result.id:
            self.result = self.result.model_copy(update=changes)
        self.recent = [g.model_copy(update=changes) if g.id == result.id else g for g in self.recent]
        return self.result

    async def cancel_run(self) -> ExecutionState:
        """
        Ask the backend to cancel the running generation.
        When the backend confirms with a terminal status the poll loop is
        stopped and the run fails as cancelled; otherwise polling carries on
        and picks the cancellation up.
        """
        result = self.result
        if result is None or self.state != ExecutionState.PROCESSING:
            return self.state
        epoch = self._epoch
        try:
            updated = await self.client.cancel_generation(result.id)
        except Exception as e:
            logger.error("Error cancelling generation %s: %s", result.id, e)
            return self.state

        if not self._is_current(epoch) or not updated.is_finished:
            return self.state
        self.cancel()
        if not updated.input:
            updated = updated.model_copy(update={"input": result.input})
        self.result = updated
        self._finish(updated)
        await self.load_recent(self.model_id)
        return self.state

    async def load_recent(self, model_id: Optional[str]):
        if not model_id:
            return
        try:
            self.recent = await self.client.list_generations(model_id=model_id, limit=self.recent_limit)
        except Exception as e:
            logger.warning("Error loading recent generations for %s: %s", model_id, e)

    # === Teardown ===

    def cancel(self):
        """Stop any in-flight submission or poll loop. The last-known state is kept."""
        self._epoch += 1
        for task in (self._submit_task, self._poll_task):
            if task is not None and not task.done():
                task.cancel()
        self._submit_task = None
        self._poll_task = None

    def teardown(self):
        self.cancel()

    def reset(self):
        self.cancel()
        self.error = None
        self.failure_kind = None
        self.result = None
        self._apply(ExecutionEvent.RESET)
