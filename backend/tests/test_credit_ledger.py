import asyncio

import pytest

from conftest import FakeClient
from runstudio.core.errors import InsufficientCreditsError, NetworkError
from runstudio.schemas import CreditBalance
from runstudio.services.credit_ledger import (
    INSUFFICIENT_CREDITS_WARNING,
    REFRESH_FAILED_WARNING,
    CreditLedger,
)


def balance(total, subscription=0, purchased=0, promotional=0):
    return CreditBalance(totalCredits=total, subscriptionCredits=subscription,
                         purchasedCredits=purchased, promotionalCredits=promotional)


class GatedBalances:
    """Each fetch waits for its own gate so tests can resolve reads out of order."""

    def __init__(self, *balances):
        self.balances = list(balances)
        self.gates = [asyncio.Event() for _ in balances]
        self.calls = 0

    async def fetch_balance(self):
        index = self.calls
        self.calls += 1
        await self.gates[index].wait()
        return self.balances[index]


@pytest.mark.asyncio
async def test_pending_debit_floors_at_zero():
    client = FakeClient(balance=balance(5, subscription=2, purchased=3, promotional=0))
    ledger = CreditLedger(client)
    await ledger.refresh()

    client.balance = balance(1, subscription=2, purchased=0)
    ledger.apply_debit(4)

    shown = ledger.balance
    assert ledger.pending_debit == 4
    assert shown.totalCredits == 1
    assert shown.purchasedCredits == 0
    assert shown.subscriptionCredits == 2
    assert ledger.authoritative.totalCredits == 5

    await ledger.wait()
    assert ledger.pending == []
    assert ledger.balance.totalCredits == 1


@pytest.mark.asyncio
async def test_repeated_debits_never_go_negative():
    client = FakeClient(balance=balance(3, purchased=3))
    ledger = CreditLedger(client)
    await ledger.refresh()
    client.balance_error = NetworkError("down")

    for _ in range(4):
        ledger.apply_debit(2)
    assert ledger.balance.purchasedCredits == 0
    assert ledger.balance.totalCredits == 0
    await ledger.wait()


@pytest.mark.asyncio
async def test_authoritative_read_overwrites_optimistic_value():
    client = FakeClient(balance=balance(10, purchased=10))
    ledger = CreditLedger(client)
    await ledger.refresh()

    # Server charged less than we guessed
    client.balance = balance(9, purchased=9)
    ledger.apply_debit(5)
    assert ledger.total_credits == 5
    await ledger.wait()
    assert ledger.total_credits == 9


@pytest.mark.asyncio
async def test_debit_without_loaded_balance_still_refreshes():
    client = FakeClient(balance=balance(20, purchased=20))
    ledger = CreditLedger(client)

    ledger.apply_debit(2)
    assert ledger.balance is None
    assert ledger.pending_debit == 2

    await ledger.wait()
    assert client.balance_calls == 1
    assert ledger.pending_debit == 0
    assert ledger.total_credits == 20


@pytest.mark.asyncio
async def test_zero_debit_is_ignored(fake_client):
    ledger = CreditLedger(fake_client)
    ledger.apply_debit(0)
    assert ledger.pending == []
    assert fake_client.balance_calls == 0


@pytest.mark.asyncio
async def test_stale_read_is_discarded():
    source = GatedBalances(balance(50), balance(40))
    ledger = CreditLedger(source)

    first = asyncio.create_task(ledger.refresh())
    second = asyncio.create_task(ledger.refresh())
    await asyncio.sleep(0)

    source.gates[1].set()
    await second
    source.gates[0].set()
    await first

    assert ledger.total_credits == 40


@pytest.mark.asyncio
async def test_failed_refresh_keeps_last_balance_and_warns():
    client = FakeClient(balance=balance(12))
    ledger = CreditLedger(client)
    await ledger.refresh()

    client.balance_error = NetworkError("down")
    await ledger.refresh()

    assert ledger.total_credits == 12
    assert ledger.warning == REFRESH_FAILED_WARNING
    ledger.dismiss_warning()
    assert ledger.warning is None


@pytest.mark.asyncio
async def test_insufficient_balance_blocks_without_network():
    client = FakeClient(balance=balance(1))
    ledger = CreditLedger(client)
    await ledger.refresh()

    assert not ledger.has_sufficient(2)
    with pytest.raises(InsufficientCreditsError) as exc:
        ledger.require(2)
    assert exc.value.required == 2
    assert exc.value.available == 1
    assert ledger.warning == INSUFFICIENT_CREDITS_WARNING
    assert client.balance_calls == 1


@pytest.mark.asyncio
async def test_low_balance_and_view():
    ledger = CreditLedger(FakeClient(balance=balance(9)), low_threshold=10)
    await ledger.refresh()
    view = ledger.view()
    assert view.isLowBalance
    assert view.balance.totalCredits == 9
    assert view.pendingDebit == 0

    ledger.reset()
    assert ledger.balance is None


@pytest.mark.asyncio
async def test_reset_drops_refreshes_already_in_flight():
    source = GatedBalances(balance(50, purchased=50), balance(60, purchased=60), balance(70, purchased=70))
    ledger = CreditLedger(source)

    ledger.apply_debit(2)
    ledger.apply_debit(3)
    # A refresh the ledger did not start itself cannot be cancelled by reset
    manual = asyncio.create_task(ledger.refresh())
    await asyncio.sleep(0)
    assert source.calls == 3

    ledger.reset()
    for gate in source.gates:
        gate.set()
    await manual
    for _ in range(5):
        await asyncio.sleep(0)

    assert ledger.balance is None
    assert ledger.pending == []
    await ledger.wait()


@pytest.mark.asyncio
async def test_reset_then_fresh_refresh_is_applied():
    client = FakeClient(balance=balance(30))
    ledger = CreditLedger(client)
    await ledger.refresh()
    await ledger.refresh()

    ledger.reset()
    client.balance = balance(25)
    await ledger.refresh()
    assert ledger.total_credits == 25


@pytest.mark.asyncio
async def test_wait_covers_every_background_refresh():
    source = GatedBalances(balance(50), balance(40))
    ledger = CreditLedger(source)
    ledger.apply_debit(1)
    ledger.apply_debit(1)
    await asyncio.sleep(0)

    for gate in source.gates:
        gate.set()
    await ledger.wait()
    assert ledger.pending == []
    assert ledger.total_credits == 40
