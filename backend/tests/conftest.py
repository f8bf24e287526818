import asyncio
import itertools
from typing import Any, Dict, List, Optional

import pytest

from runstudio.schemas import CreditBalance, Generation, InputSchema, ModelInfo


WORKED_SCHEMA = {
    "type": "object",
    "properties": {
        "prompt": {"type": "string", "description": "What to draw"},
        "width": {"type": "integer", "default": 1024},
    },
    "required": ["prompt"],
}


class InstantScheduler:
    """Scheduler that yields to the loop instead of sleeping."""

    def __init__(self):
        self.sleeps: List[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)


class FakeClient:
    """
    In-memory stand-in for RunClient.

    ``statuses`` is consumed one entry per fetch_status call: a status string,
    a dict of Generation fields, or an exception to raise. Once exhausted
    every fetch reports "processing".
    """

    def __init__(self, submit_status: str = "processing", statuses: Optional[List[Any]] = None,
                 submit_error: Optional[Exception] = None, credits_used: Optional[int] = 2,
                 balance: Optional[CreditBalance] = None, schema: Optional[Dict[str, Any]] = None,
                 credit_cost: Optional[int] = 2):
        self.submit_status = submit_status
        self.statuses = list(statuses or [])
        self.submit_error = submit_error
        self.credits_used = credits_used
        self.balance = balance if balance is not None else CreditBalance(totalCredits=100, purchasedCredits=100)
        self.balance_error: Optional[Exception] = None
        self.balance_gate: Optional[asyncio.Event] = None
        self.update_error: Optional[Exception] = None
        self.schema = schema or WORKED_SCHEMA
        self.credit_cost = credit_cost

        self.submitted: List[Dict[str, Any]] = []
        self.fetched: List[str] = []
        self.updates: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.cancel_status = "cancelled"
        self.balance_calls = 0
        self.history: List[Generation] = []
        self._ids = itertools.count(1)

    # === Models ===

    async def get_model(self, model_id: str) -> ModelInfo:
        return ModelInfo(id="m-1", modelId=model_id, name="Test Model", creditCost=self.credit_cost)

    async def get_model_schema(self, model_id: str) -> InputSchema:
        return InputSchema.model_validate(self.schema)

    # === Runs ===

    async def submit(self, model_id, input, title=None, tags=None, organization_id=None) -> Generation:
        self.submitted.append({"model_id": model_id, "input": input, "title": title, "tags": tags})
        if self.submit_error is not None:
            raise self.submit_error
        generation = Generation(
            id=f"gen-{next(self._ids)}",
            modelId=model_id,
            status=self.submit_status,
            input=input,
            creditsUsed=self.credits_used,
            title=title,
            tags=tags,
        )
        self.history.insert(0, generation)
        return generation

    async def fetch_status(self, generation_id: str) -> Generation:
        self.fetched.append(generation_id)
        item = self.statuses.pop(0) if self.statuses else "processing"
        if isinstance(item, Exception):
            raise item
        fields = item if isinstance(item, dict) else {"status": item}
        return Generation(id=generation_id, modelId="owner/model", **fields)

    async def update_generation(self, generation_id, is_favorite=None, title=None, tags=None) -> Generation:
        update = {"id": generation_id, "isFavorite": is_favorite}
        if title is not None:
            update["title"] = title
        if tags is not None:
            update["tags"] = tags
        self.updates.append(update)
        if self.update_error is not None:
            raise self.update_error
        # Fields that were not edited come back different to prove they are not copied
        return Generation(id=generation_id, modelId="owner/model", status="completed",
                          isFavorite=bool(is_favorite),
                          title=title if title is not None else "server title",
                          tags=tags if tags is not None else ["server"])

    async def cancel_generation(self, generation_id: str) -> Generation:
        self.cancelled.append(generation_id)
        return Generation(id=generation_id, modelId="owner/model", status=self.cancel_status)

    async def list_generations(self, model_id=None, page=1, limit=20, status=None, favorite=None) -> List[Generation]:
        return list(self.history[:limit])

    # === Credits ===

    async def fetch_balance(self) -> CreditBalance:
        self.balance_calls += 1
        if self.balance_gate is not None:
            await self.balance_gate.wait()
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance


class RecordingLedger:
    def __init__(self):
        self.debits: List[int] = []

    def apply_debit(self, amount: int) -> None:
        self.debits.append(amount)


@pytest.fixture
def scheduler():
    return InstantScheduler()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def worked_schema():
    return InputSchema.model_validate(WORKED_SCHEMA)
