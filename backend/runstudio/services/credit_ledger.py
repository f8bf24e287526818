import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Set

from runstudio.core.config import settings
from runstudio.core.errors import InsufficientCreditsError
from runstudio.schemas import CreditBalance, CreditsResponse

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS_WARNING = "Insufficient credits"
REFRESH_FAILED_WARNING = "Could not refresh your credit balance"


class BalanceSource(Protocol):
    async def fetch_balance(self) -> CreditBalance: ...


@dataclass
class PendingDebit:
    amount: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CreditLedger:
    """
    Displayed credit balance for one account.

    The server balance is only ever replaced by a server read. Debits made
    right after a submission are kept as pending markers on top of it, so the
    displayed balance drops immediately and snaps back to the server value on
    the next refresh.
    """

    def __init__(self, client: BalanceSource, low_threshold: int = settings.LOW_CREDITS_THRESHOLD):
        self.client = client
        self.low_threshold = low_threshold
        self.pending: List[PendingDebit] = []
        self.warning: Optional[str] = None
        self._authoritative: Optional[CreditBalance] = None
        self._tasks: Set[asyncio.Task] = set()
        self._generation = 0
        self._issued = 0
        self._applied = 0

    # === Reads ===

    @property
    def authoritative(self) -> Optional[CreditBalance]:
        return self._authoritative

    @property
    def pending_debit(self) -> int:
        return sum(d.amount for d in self.pending)

    @property
    def balance(self) -> Optional[CreditBalance]:
        if self._authoritative is None:
            return None
        owed = self.pending_debit
        return self._authoritative.debited(owed) if owed else self._authoritative

    @property
    def total_credits(self) -> int:
        balance = self.balance
        return balance.totalCredits if balance else 0

    @property
    def is_low_balance(self) -> bool:
        return self.total_credits < self.low_threshold

    def has_sufficient(self, required: int) -> bool:
        return self.total_credits >= required

    def require(self, required: int):
        """Raise InsufficientCreditsError (and surface the warning) unless ``required`` is covered."""
        if not self.has_sufficient(required):
            self.warning = INSUFFICIENT_CREDITS_WARNING
            raise InsufficientCreditsError(required=required, available=self.total_credits)

    def view(self) -> CreditsResponse:
        return CreditsResponse(
            balance=self.balance,
            pendingDebit=self.pending_debit,
            isLowBalance=self.is_low_balance,
            warning=self.warning,
        )

    # === Writes ===

    def apply_debit(self, amount: int):
        """Record an optimistic debit and kick off a background refresh."""
        if amount <= 0:
            return
        self.pending.append(PendingDebit(amount))
        logger.info("Optimistically deducting %d credits", amount)
        task = asyncio.create_task(self.refresh())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def refresh(self) -> Optional[CreditBalance]:
        generation = self._generation
        self._issued += 1
        seq = self._issued
        try:
            fetched = await self.client.fetch_balance()
        except Exception as e:
            logger.error("Failed to fetch credit balance: %s", e)
            if generation == self._generation:
                self.warning = REFRESH_FAILED_WARNING
            return self.balance

        if generation != self._generation:
            logger.debug("Discarding balance read issued before reset")
            return self.balance

        # An older request resolving late must not replace a newer read
        if seq < self._applied:
            logger.debug("Discarding stale balance read %d (applied %d)", seq, self._applied)
            return self.balance
        self._applied = seq
        self._authoritative = fetched
        self.pending.clear()
        self.warning = None
        logger.info("Balance updated - %d credits", fetched.totalCredits)
        return self.balance

    async def wait(self):
        """Block until every background refresh started so far has finished."""
        if self._tasks:
            await asyncio.wait(list(self._tasks))

    def dismiss_warning(self):
        self.warning = None

    def reset(self):
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        # Reads already in flight belong to the old generation and are dropped
        self._generation += 1
        self._issued = 0
        self._applied = 0
        self._authoritative = None
        self.pending.clear()
        self.warning = None
