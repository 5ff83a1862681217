import copy
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

ZERO = Decimal("0")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """
    in-memory implementation of the store interface used by the engines.
    same method surface as db.store.PostgresStore; rows are plain dicts.

    transaction() snapshots every table and restores it if the block
    raises, so a failed plot leaves nothing behind. nested blocks behave
    like savepoints. a re-entrant lock serializes transactions, which also
    serializes wallet updates.
    """

    _TABLES = ("profiles", "plots", "payments", "commissions", "transactions", "wallets")

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.clock = clock or _utcnow
        self._lock = threading.RLock()
        for name in self._TABLES:
            setattr(self, name, {})

    # ---------
    # transactions
    # ---------

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}
            try:
                yield self
            except BaseException:
                for name, rows in snapshot.items():
                    setattr(self, name, rows)
                raise

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    # ---------
    # seeding helpers (tests / local tooling)
    # ---------

    def add_profile(self, profile_id, full_name: str, upline_id=None) -> Dict[str, Any]:
        row = {
            "id": profile_id,
            "full_name": full_name,
            "upline_id": upline_id,
            "is_deleted": False,
            "created_at": self.clock(),
        }
        self.profiles[profile_id] = row
        return dict(row)

    def add_plot(self, plot_id, **fields) -> Dict[str, Any]:
        row = {
            "id": plot_id,
            "project_name": None,
            "plot_number": None,
            "area": None,
            "total_price": None,
            "status": "available",
            "paid_percentage": ZERO,
            "broker_id": None,
            "commission_status": "pending",
            "updated_at": self.clock(),
        }
        row.update(fields)
        self.plots[plot_id] = row
        return dict(row)

    def delete_profile(self, profile_id) -> None:
        """soft delete, like the admin UI does."""
        if profile_id in self.profiles:
            self.profiles[profile_id]["is_deleted"] = True

    # ---------
    # profiles
    # ---------

    def get_profile(self, profile_id) -> Optional[Dict[str, Any]]:
        row = self.profiles.get(profile_id)
        if row is None or row.get("is_deleted"):
            return None
        return dict(row)

    def set_profile_upline(self, profile_id, upline_id) -> None:
        self.profiles[profile_id]["upline_id"] = upline_id

    # ---------
    # plots
    # ---------

    def get_plot(self, plot_id, for_update: bool = False) -> Optional[Dict[str, Any]]:
        row = self.plots.get(plot_id)
        return dict(row) if row is not None else None

    def list_plots(self, status: Optional[str] = None, broker_id=None) -> List[Dict[str, Any]]:
        rows = [
            dict(r)
            for r in self.plots.values()
            if (status is None or r["status"] == status)
            and (broker_id is None or r["broker_id"] == broker_id)
        ]
        return rows

    def update_plot(self, plot_id, **fields) -> None:
        self.plots[plot_id].update(fields, updated_at=self.clock())

    # ---------
    # payments
    # ---------

    def insert_payment(self, row: Dict[str, Any]) -> Dict[str, Any]:
        payment = {"id": self._new_id(), "created_at": self.clock(), **row}
        self.payments[payment["id"]] = payment
        return dict(payment)

    def list_payments(self, plot_id) -> List[Dict[str, Any]]:
        rows = [dict(p) for p in self.payments.values() if p["plot_id"] == plot_id]
        return sorted(rows, key=lambda p: p["created_at"])

    # ---------
    # commissions
    # ---------

    def list_commissions(self, plot_id=None, receiver_id=None) -> List[Dict[str, Any]]:
        rows = [
            dict(c)
            for c in self.commissions.values()
            if (plot_id is None or c["plot_id"] == plot_id)
            and (receiver_id is None or c["receiver_id"] == receiver_id)
        ]
        return sorted(rows, key=lambda c: (c["created_at"], c["level"]))

    def insert_commission(self, row: Dict[str, Any]) -> Dict[str, Any]:
        now = self.clock()
        commission = {"id": self._new_id(), "created_at": now, "updated_at": now, **row}
        self.commissions[commission["id"]] = commission
        return dict(commission)

    def update_commission(self, commission_id, **fields) -> None:
        fields.pop("created_at", None)
        self.commissions[commission_id].update(fields, updated_at=self.clock())

    def delete_commission(self, commission_id) -> None:
        self.commissions.pop(commission_id, None)

    # ---------
    # transactions (wallet ledger)
    # ---------

    def list_transactions(
        self,
        plot_id=None,
        tx_type: Optional[str] = None,
        wallet_id=None,
        include_reversed: bool = False,
    ) -> List[Dict[str, Any]]:
        rows = [
            dict(t)
            for t in self.transactions.values()
            if (plot_id is None or t["plot_id"] == plot_id)
            and (tx_type is None or t["type"] == tx_type)
            and (wallet_id is None or t["wallet_id"] == wallet_id)
            and (include_reversed or not t["is_reversed"])
        ]
        return sorted(rows, key=lambda t: t["created_at"])

    def insert_transaction(self, row: Dict[str, Any], created_at=None) -> Dict[str, Any]:
        tx = {
            "id": self._new_id(),
            "is_reversed": False,
            **row,
            "created_at": created_at or self.clock(),
        }
        self.transactions[tx["id"]] = tx
        return dict(tx)

    def delete_transactions(self, plot_id, tx_type: Optional[str] = None) -> int:
        doomed = [
            tx_id
            for tx_id, t in self.transactions.items()
            if t["plot_id"] == plot_id
            and (tx_type is None or t["type"] == tx_type)
            and not t["is_reversed"]
        ]
        for tx_id in doomed:
            del self.transactions[tx_id]
        return len(doomed)

    def mark_transactions_reversed(self, plot_id) -> int:
        count = 0
        for t in self.transactions.values():
            if t["plot_id"] == plot_id and t["type"] == "credit" and not t["is_reversed"]:
                t["is_reversed"] = True
                count += 1
        return count

    # ---------
    # wallets
    # ---------

    def get_wallet(self, owner_id, for_update: bool = False) -> Optional[Dict[str, Any]]:
        row = self.wallets.get(owner_id)
        return dict(row) if row is not None else None

    def create_wallet(self, owner_id) -> Dict[str, Any]:
        row = {
            "owner_id": owner_id,
            "direct_sale_balance": ZERO,
            "downline_sale_balance": ZERO,
            "total_balance": ZERO,
            "updated_at": self.clock(),
        }
        self.wallets[owner_id] = row
        return dict(row)

    def update_wallet(self, owner_id, **balances) -> None:
        self.wallets[owner_id].update(balances, updated_at=self.clock())
