from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from memory_store import MemoryStore


class TickingClock:
    """each call is one second after the previous one."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def chain_store(store):
    """
    U2 <- U1 <- S (S sold plot P1 for 10,00,000; U2 has no upline)
    """
    store.add_profile("U2", "Upline Two")
    store.add_profile("U1", "Upline One", upline_id="U2")
    store.add_profile("S", "Seller", upline_id="U1")
    store.add_plot(
        "P1",
        project_name="Green Valley",
        plot_number="12",
        area=Decimal("300"),
        total_price=Decimal("1000000"),
        status="sold",
        paid_percentage=Decimal("100"),
        broker_id="S",
    )
    return store


@pytest.fixture
def balance():
    """balance(store, owner_id, field) -> Decimal, 0 for a missing wallet."""

    def _balance(store, owner_id, field="total_balance"):
        wallet = store.get_wallet(owner_id)
        return wallet[field] if wallet else Decimal("0")

    return _balance
