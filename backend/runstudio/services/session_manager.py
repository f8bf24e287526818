import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from runstudio.core.config import settings
from runstudio.schemas import InputSchema, ModelInfo, SessionResponse
from runstudio.services.credit_ledger import CreditLedger
from runstudio.services.execution import (
    AsyncioScheduler,
    ExecutionController,
    ExecutionState,
    Scheduler,
)
from runstudio.services.form_engine import FormEngine, FormState
from runstudio.services.job_client import RunClient

logger = logging.getLogger(__name__)


class RunSession:
    """One open model form: schema, the user's values and the run controller."""

    def __init__(self, model: ModelInfo, schema: InputSchema, controller: ExecutionController,
                 ledger: CreditLedger, api_key: Optional[str]):
        self.id = str(uuid.uuid4())
        self.model = model
        self.schema = schema
        self.engine = FormEngine(schema)
        self.form = FormState()
        self.controller = controller
        self.ledger = ledger
        self.api_key = api_key
        self.credit_cost = model.effective_credit_cost(settings.DEFAULT_CREDIT_COST)
        self.created_at = datetime.now()
        self.updated_at = datetime.now()

    def touch(self):
        self.updated_at = datetime.now()

    def set_value(self, key: str, value: Any):
        if key not in self.schema.properties:
            raise KeyError(key)
        if value is None:
            self.form.clear_value(key)
        else:
            self.form.set_value(key, value)
        self.touch()

    async def submit(self, title: Optional[str] = None, tags: Optional[List[str]] = None) -> ExecutionState:
        """
        Credit check, then validation, then submission.
        Raises InsufficientCreditsError or FormValidationError before anything
        is sent.
        """
        self.ledger.require(self.credit_cost)
        payload = self.engine.build_payload(self.form)
        state = await self.controller.execute(self.model.modelId, payload, title=title, tags=tags)
        if state in (ExecutionState.PROCESSING, ExecutionState.COMPLETED):
            self.form.clear()
        self.touch()
        return state

    def view(self) -> SessionResponse:
        return SessionResponse(
            id=self.id,
            model=self.model,
            creditCost=self.credit_cost,
            fields=self.engine.fields(),
            values=dict(self.form.values),
            errors=dict(self.form.errors),
            execution=self.controller.snapshot(),
        )


class SessionManager:
    def __init__(self, client_factory: Callable[..., Any] = RunClient,
                 scheduler_factory: Callable[[], Scheduler] = AsyncioScheduler):
        self.client_factory = client_factory
        self.scheduler_factory = scheduler_factory
        self.sessions: Dict[str, RunSession] = {}
        self.clients: Dict[str, Any] = {}
        self.ledgers: Dict[str, CreditLedger] = {}

    @staticmethod
    def _account(api_key: Optional[str]) -> str:
        return api_key or settings.API_KEY or ""

    def client_for(self, api_key: Optional[str]):
        account = self._account(api_key)
        if account not in self.clients:
            self.clients[account] = self.client_factory(api_key=account or None)
        return self.clients[account]

    def ledger_for(self, api_key: Optional[str]) -> CreditLedger:
        """One ledger per account, shared by all of its sessions."""
        account = self._account(api_key)
        if account not in self.ledgers:
            self.ledgers[account] = CreditLedger(self.client_for(account))
        return self.ledgers[account]

    async def open_session(self, model_id: str, api_key: Optional[str] = None) -> RunSession:
        client = self.client_for(api_key)
        model = await client.get_model(model_id)
        schema = await client.get_model_schema(model_id)

        ledger = self.ledger_for(api_key)
        if ledger.authoritative is None:
            await ledger.refresh()

        controller = ExecutionController(client, scheduler=self.scheduler_factory(), ledger=ledger)
        session = RunSession(model, schema, controller, ledger, api_key)
        self.sessions[session.id] = session
        await controller.load_recent(model.modelId)
        logger.info("Opened session %s for model %s (%d fields)", session.id, model_id, len(schema.properties))
        return session

    def get_session(self, session_id: str) -> Optional[RunSession]:
        return self.sessions.get(session_id)

    def close_session(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        session.controller.teardown()
        logger.info("Closed session %s", session_id)
        return True

    def close_all(self):
        for session_id in list(self.sessions):
            self.close_session(session_id)
        for ledger in self.ledgers.values():
            ledger.reset()


session_manager = SessionManager()


def get_session_manager() -> SessionManager:
    return session_manager
