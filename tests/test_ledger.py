from decimal import Decimal

import pytest

from commission_engine import compute_distribution
from errors import InvalidStateError
from ledger import (
    MODE_INITIAL,
    MODE_RECALCULATE,
    apply_distribution,
    apply_wallet_delta,
    quantize_amount,
    reverse_distribution,
)
from memory_store import MemoryStore
from upline_engine import resolve_chain


def _distribution(store, plot_id):
    plot = store.get_plot(plot_id)
    chain = resolve_chain(store, plot["broker_id"])
    context = {"sale_type": "sold", "sale_amount": plot["total_price"]}
    return plot, compute_distribution(context, chain)


def _commissions_by_key(store, plot_id):
    return {(c["receiver_id"], c["level"]): c for c in store.list_commissions(plot_id=plot_id)}


def test_quantize_rounds_half_up_to_cents():
    assert quantize_amount(Decimal("19.9998")) == Decimal("20.00")
    assert quantize_amount(Decimal("1.66665")) == Decimal("1.67")
    assert quantize_amount(Decimal("0.004")) == Decimal("0.00")


def test_wallet_delta_keeps_total_equal_to_sub_balances():
    wallet = {
        "direct_sale_balance": Decimal("100"),
        "downline_sale_balance": Decimal("50"),
        "total_balance": Decimal("150"),
    }

    updated, overdrawn = apply_wallet_delta(wallet, "downline", Decimal("25"))

    assert not overdrawn
    assert updated["downline_sale_balance"] == Decimal("75")
    assert updated["total_balance"] == Decimal("175")


def test_wallet_delta_clamps_at_zero():
    wallet = {
        "direct_sale_balance": Decimal("100"),
        "downline_sale_balance": Decimal("50"),
        "total_balance": Decimal("150"),
    }

    updated, overdrawn = apply_wallet_delta(wallet, "direct", Decimal("-130"))

    assert overdrawn
    assert updated["direct_sale_balance"] == Decimal("0")
    assert updated["total_balance"] == Decimal("50")


def test_initial_apply_credits_wallets_and_records(chain_store, balance):
    plot, distribution = _distribution(chain_store, "P1")

    result = apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    assert result["total_distributed"] == Decimal("85000")
    assert result["skipped"] == []

    assert balance(chain_store, "S", "direct_sale_balance") == Decimal("60000")
    assert balance(chain_store, "S", "downline_sale_balance") == Decimal("0")
    assert balance(chain_store, "U1", "downline_sale_balance") == Decimal("20000")
    assert balance(chain_store, "U2", "total_balance") == Decimal("5000")

    commissions = _commissions_by_key(chain_store, "P1")
    assert set(commissions) == {("S", 0), ("U1", 1), ("U2", 2)}
    assert commissions[("U1", 1)]["seller_name"] == "Seller"
    assert commissions[("U1", 1)]["sale_amount"] == Decimal("1000000")

    txs = chain_store.list_transactions(plot_id="P1")
    assert len(txs) == 3
    assert {(t["wallet_id"], t["wallet_type"], t["type"]) for t in txs} == {
        ("S", "direct", "credit"),
        ("U1", "downline", "credit"),
        ("U2", "downline", "credit"),
    }

    assert chain_store.get_plot("P1")["commission_status"] == "paid"


def test_initial_apply_refuses_plot_with_existing_records(chain_store):
    plot, distribution = _distribution(chain_store, "P1")
    apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    with pytest.raises(InvalidStateError):
        apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    assert len(chain_store.list_commissions(plot_id="P1")) == 3


def test_unknown_mode_rejected(chain_store):
    plot, distribution = _distribution(chain_store, "P1")

    with pytest.raises(ValueError):
        apply_distribution(chain_store, plot, distribution, "replay")


def test_recalculate_after_price_correction(chain_store, balance):
    """
    10,00,000 corrected to 12,00,000: amounts update in place, wallets move
    by the delta only, created_at values are untouched.
    """
    plot, distribution = _distribution(chain_store, "P1")
    apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    before = _commissions_by_key(chain_store, "P1")
    tx_before = {(t["wallet_id"], t["level"]): t["created_at"] for t in chain_store.list_transactions(plot_id="P1")}

    chain_store.update_plot("P1", total_price=Decimal("1200000"))
    plot, distribution = _distribution(chain_store, "P1")
    result = apply_distribution(chain_store, plot, distribution, MODE_RECALCULATE)

    after = _commissions_by_key(chain_store, "P1")
    assert after[("S", 0)]["amount"] == Decimal("72000")
    assert after[("U1", 1)]["amount"] == Decimal("24000")
    assert after[("U2", 2)]["amount"] == Decimal("6000")

    for key in before:
        assert after[key]["id"] == before[key]["id"]
        assert after[key]["created_at"] == before[key]["created_at"]

    assert balance(chain_store, "S") == Decimal("72000")
    assert balance(chain_store, "U1") == Decimal("24000")
    assert balance(chain_store, "U2") == Decimal("6000")

    tx_after = {(t["wallet_id"], t["level"]): t["created_at"] for t in chain_store.list_transactions(plot_id="P1")}
    assert tx_after == tx_before

    assert result["previous_total"] == Decimal("85000")
    assert result["total_distributed"] == Decimal("102000")
    assert all(c["updated"] for c in result["credited"])


def test_recalculate_twice_is_idempotent(chain_store, balance):
    plot, distribution = _distribution(chain_store, "P1")
    apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    apply_distribution(chain_store, plot, distribution, MODE_RECALCULATE)
    wallets_once = {k: dict(v) for k, v in chain_store.wallets.items()}
    commissions_once = _commissions_by_key(chain_store, "P1")

    apply_distribution(chain_store, plot, distribution, MODE_RECALCULATE)
    commissions_twice = _commissions_by_key(chain_store, "P1")

    for owner, wallet in wallets_once.items():
        for field in ("direct_sale_balance", "downline_sale_balance", "total_balance"):
            assert chain_store.wallets[owner][field] == wallet[field]

    ignore = {"updated_at"}
    for key, row in commissions_once.items():
        assert {k: v for k, v in commissions_twice[key].items() if k not in ignore} == {
            k: v for k, v in row.items() if k not in ignore
        }
    assert len(chain_store.list_transactions(plot_id="P1")) == 3


def test_recalculate_without_prior_records_inserts(chain_store, balance):
    plot, distribution = _distribution(chain_store, "P1")

    result = apply_distribution(chain_store, plot, distribution, MODE_RECALCULATE)

    assert result["previous_total"] == Decimal("0")
    assert not any(c["updated"] for c in result["credited"])
    assert balance(chain_store, "S") == Decimal("60000")


def test_recipient_deleted_before_apply_is_skipped(chain_store, balance):
    plot, distribution = _distribution(chain_store, "P1")
    chain_store.delete_profile("U1")

    result = apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    assert result["skipped"] == [
        {"receiver_id": "U1", "level": 1, "reason": "profile not found"}
    ]
    assert balance(chain_store, "S") == Decimal("60000")
    assert balance(chain_store, "U1") == Decimal("0")
    assert balance(chain_store, "U2") == Decimal("5000")
    assert set(_commissions_by_key(chain_store, "P1")) == {("S", 0), ("U2", 2)}


class FlakyStore(MemoryStore):
    """fails on the n-th transaction insert."""

    def __init__(self, fail_on, **kwargs):
        super().__init__(**kwargs)
        self.fail_on = fail_on
        self.inserts = 0

    def insert_transaction(self, row, created_at=None):
        self.inserts += 1
        if self.inserts == self.fail_on:
            raise RuntimeError("connection reset")
        return super().insert_transaction(row, created_at=created_at)


def test_failure_mid_plot_rolls_back_everything(clock, balance):
    store = FlakyStore(fail_on=2, clock=clock)
    store.add_profile("U1", "Upline One")
    store.add_profile("S", "Seller", upline_id="U1")
    store.add_plot("P1", total_price=Decimal("1000000"), status="sold", broker_id="S")

    plot, distribution = _distribution(store, "P1")
    with pytest.raises(RuntimeError):
        apply_distribution(store, plot, distribution, MODE_INITIAL)

    assert store.list_commissions(plot_id="P1") == []
    assert store.list_transactions(plot_id="P1") == []
    assert balance(store, "S") == Decimal("0")
    assert store.get_plot("P1")["commission_status"] == "pending"


def test_duplicate_commission_rows_are_collapsed(chain_store, balance):
    plot, distribution = _distribution(chain_store, "P1")
    apply_distribution(chain_store, plot, distribution, MODE_INITIAL)
    original = _commissions_by_key(chain_store, "P1")[("U1", 1)]

    # a stray second row for the same key, and its wallet credit
    chain_store.insert_commission(
        {
            "plot_id": "P1",
            "receiver_id": "U1",
            "level": 1,
            "seller_id": "S",
            "seller_name": "Seller",
            "receiver_name": "Upline One",
            "percentage": Decimal("2"),
            "sale_amount": Decimal("1000000"),
            "amount": Decimal("20000"),
        }
    )
    chain_store.update_wallet(
        "U1",
        direct_sale_balance=Decimal("0"),
        downline_sale_balance=Decimal("40000"),
        total_balance=Decimal("40000"),
    )

    result = apply_distribution(chain_store, plot, distribution, MODE_RECALCULATE)

    rows = [c for c in chain_store.list_commissions(plot_id="P1") if c["receiver_id"] == "U1"]
    assert len(rows) == 1
    assert rows[0]["id"] == original["id"]
    assert balance(chain_store, "U1") == Decimal("20000")
    assert [w["kind"] for w in result["warnings"]] == ["duplicate_commission"]


def test_reversal_below_zero_is_clamped_and_reported(chain_store, balance):
    plot, distribution = _distribution(chain_store, "P1")
    apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    # seller withdrew part of the balance outside the engine
    chain_store.update_wallet(
        "S",
        direct_sale_balance=Decimal("10000"),
        downline_sale_balance=Decimal("0"),
        total_balance=Decimal("10000"),
    )

    result = apply_distribution(chain_store, plot, distribution, MODE_RECALCULATE)

    assert balance(chain_store, "S") == Decimal("60000")
    assert {w["kind"] for w in result["warnings"]} == {"negative_balance"}
    assert result["warnings"][0]["owner_id"] == "S"


def test_stale_commission_removed_when_chain_changes(chain_store, balance):
    plot, distribution = _distribution(chain_store, "P1")
    apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    # U1 left the network; S now sits directly under U2
    chain_store.set_profile_upline("S", "U2")
    plot, distribution = _distribution(chain_store, "P1")
    apply_distribution(chain_store, plot, distribution, MODE_RECALCULATE)

    assert set(_commissions_by_key(chain_store, "P1")) == {("S", 0), ("U2", 1)}
    assert balance(chain_store, "U1") == Decimal("0")
    assert balance(chain_store, "U2") == Decimal("20000")


def test_amounts_rounded_once_at_write(store, balance):
    store.add_profile("S", "Seller")
    store.add_plot("P9", total_price=Decimal("333.33"), status="sold", broker_id="S")
    plot, distribution = _distribution(store, "P9")

    apply_distribution(store, plot, distribution, MODE_INITIAL)

    assert balance(store, "S") == Decimal("20.00")


def test_reverse_distribution_debits_and_keeps_history(chain_store, balance):
    plot, distribution = _distribution(chain_store, "P1")
    apply_distribution(chain_store, plot, distribution, MODE_INITIAL)

    result = reverse_distribution(chain_store, plot)

    assert result["previous_total"] == Decimal("85000")
    assert balance(chain_store, "S") == Decimal("0")
    assert balance(chain_store, "U1") == Decimal("0")
    assert chain_store.list_commissions(plot_id="P1") == []
    assert chain_store.get_plot("P1")["commission_status"] == "pending"

    history = chain_store.list_transactions(plot_id="P1", include_reversed=True)
    assert sorted(t["type"] for t in history) == ["credit"] * 3 + ["debit"] * 3
    assert all(t["is_reversed"] for t in history if t["type"] == "credit")

    # a fresh distribution after the reversal starts clean
    apply_distribution(chain_store, plot, distribution, MODE_INITIAL)
    assert balance(chain_store, "S") == Decimal("60000")
