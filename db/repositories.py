from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from psycopg import Connection, sql

PLOT_UPDATABLE = {"status", "paid_percentage", "commission_status", "total_price", "area", "broker_id"}
COMMISSION_UPDATABLE = {
    "seller_id",
    "seller_name",
    "receiver_name",
    "percentage",
    "sale_amount",
    "amount",
}


def _set_clause(fields: Dict[str, Any], allowed) -> sql.Composed:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"cannot update columns: {sorted(unknown)}")
    return sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name))
        for name in fields
    )


# ---------
# profiles
# ---------


def get_profile(conn: Connection, profile_id) -> Optional[Dict[str, Any]]:
    """
    fetch a live profile, or None if it is missing or soft-deleted.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, full_name, upline_id, is_deleted, created_at
            FROM profiles
            WHERE id = %s AND is_deleted = FALSE
            """,
            (profile_id,),
        )
        return cur.fetchone()


def set_profile_upline(conn: Connection, profile_id, upline_id) -> None:
    """
    set upline_id for a profile. assumes all checks already done.
    """
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE profiles SET upline_id = %s WHERE id = %s",
            (upline_id, profile_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Failed to update upline for profile {profile_id}")


# ---------
# plots
# ---------


def get_plot(conn: Connection, plot_id, for_update: bool = False) -> Optional[Dict[str, Any]]:
    """
    with for_update the plot row is locked until the transaction ends, so two
    requests distributing the same plot see each other's commission_status.
    """
    query = "SELECT * FROM plots WHERE id = %s"
    if for_update:
        query += " FOR UPDATE"
    with conn.cursor() as cur:
        cur.execute(query, (plot_id,))
        return cur.fetchone()


def list_plots(conn: Connection, status: Optional[str] = None, broker_id=None) -> List[Dict[str, Any]]:
    clauses = []
    params: List[Any] = []
    if status is not None:
        clauses.append("status = %s")
        params.append(status)
    if broker_id is not None:
        clauses.append("broker_id = %s")
        params.append(broker_id)
    where_sql = ("WHERE " + " AND ".join(clauses)) if clauses else ""

    with conn.cursor() as cur:
        cur.execute(f"SELECT * FROM plots {where_sql} ORDER BY id", tuple(params))
        return cur.fetchall()


def update_plot(conn: Connection, plot_id, **fields) -> None:
    query = sql.SQL("UPDATE plots SET {}, updated_at = NOW() WHERE id = {}").format(
        _set_clause(fields, PLOT_UPDATABLE), sql.Placeholder("plot_id")
    )
    with conn.cursor() as cur:
        cur.execute(query, {**fields, "plot_id": plot_id})
        if cur.rowcount != 1:
            raise ValueError(f"Plot {plot_id} not found")


# ---------
# payments
# ---------


def insert_payment(conn: Connection, row: Dict[str, Any]) -> Dict[str, Any]:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO payments (plot_id, amount, payment_date, note)
            VALUES (%s, %s, %s, %s)
            RETURNING id, plot_id, amount, payment_date, note, created_at
            """,
            (row["plot_id"], row["amount"], row.get("payment_date") or date.today(), row.get("note")),
        )
        return cur.fetchone()


def list_payments(conn: Connection, plot_id) -> List[Dict[str, Any]]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, plot_id, amount, payment_date, note, created_at
            FROM payments
            WHERE plot_id = %s
            ORDER BY created_at, id
            """,
            (plot_id,),
        )
        return cur.fetchall()


# ---------
# commissions
# ---------


def list_commissions(conn: Connection, plot_id=None, receiver_id=None) -> List[Dict[str, Any]]:
    clauses = []
    params: List[Any] = []
    if plot_id is not None:
        clauses.append("plot_id = %s")
        params.append(plot_id)
    if receiver_id is not None:
        clauses.append("receiver_id = %s")
        params.append(receiver_id)
    where_sql = ("WHERE " + " AND ".join(clauses)) if clauses else ""

    with conn.cursor() as cur:
        cur.execute(
            f"SELECT * FROM commissions {where_sql} ORDER BY created_at, level, id",
            tuple(params),
        )
        return cur.fetchall()


def insert_commission(conn: Connection, row: Dict[str, Any]) -> Dict[str, Any]:
    """
    insert one commission row. the (plot_id, receiver_id, level) unique
    constraint rejects duplicates.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO commissions
                (plot_id, seller_id, seller_name, receiver_id, receiver_name,
                 level, percentage, sale_amount, amount)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                row["plot_id"],
                row.get("seller_id"),
                row.get("seller_name"),
                row["receiver_id"],
                row.get("receiver_name"),
                row["level"],
                row["percentage"],
                row["sale_amount"],
                row["amount"],
            ),
        )
        return cur.fetchone()


def update_commission(conn: Connection, commission_id, **fields) -> None:
    """
    update a commission in place. created_at is never part of the SET list.
    """
    fields.pop("created_at", None)
    query = sql.SQL("UPDATE commissions SET {}, updated_at = NOW() WHERE id = {}").format(
        _set_clause(fields, COMMISSION_UPDATABLE), sql.Placeholder("commission_id")
    )
    with conn.cursor() as cur:
        cur.execute(query, {**fields, "commission_id": commission_id})


def delete_commission(conn: Connection, commission_id) -> None:
    with conn.cursor() as cur:
        cur.execute("DELETE FROM commissions WHERE id = %s", (commission_id,))


# ---------
# transactions
# ---------


def list_transactions(
    conn: Connection,
    plot_id=None,
    tx_type: Optional[str] = None,
    wallet_id=None,
    include_reversed: bool = False,
) -> List[Dict[str, Any]]:
    clauses = []
    params: List[Any] = []
    if plot_id is not None:
        clauses.append("plot_id = %s")
        params.append(plot_id)
    if tx_type is not None:
        clauses.append("type = %s")
        params.append(tx_type)
    if wallet_id is not None:
        clauses.append("wallet_id = %s")
        params.append(wallet_id)
    if not include_reversed:
        clauses.append("is_reversed = FALSE")
    where_sql = ("WHERE " + " AND ".join(clauses)) if clauses else ""

    with conn.cursor() as cur:
        cur.execute(
            f"SELECT * FROM transactions {where_sql} ORDER BY created_at, id",
            tuple(params),
        )
        return cur.fetchall()


def insert_transaction(conn: Connection, row: Dict[str, Any], created_at=None) -> Dict[str, Any]:
    """
    append a wallet ledger row. when created_at is given (recalculation),
    the row keeps the original timestamp instead of NOW().
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO transactions
                (wallet_id, type, wallet_type, level, amount, description, plot_id, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()))
            RETURNING *
            """,
            (
                row["wallet_id"],
                row["type"],
                row["wallet_type"],
                row["level"],
                row["amount"],
                row.get("description"),
                row.get("plot_id"),
                created_at,
            ),
        )
        return cur.fetchone()


def delete_transactions(conn: Connection, plot_id, tx_type: Optional[str] = None) -> int:
    """
    delete the live (non-reversed) transactions of a plot.
    """
    with conn.cursor() as cur:
        if tx_type is None:
            cur.execute(
                "DELETE FROM transactions WHERE plot_id = %s AND is_reversed = FALSE",
                (plot_id,),
            )
        else:
            cur.execute(
                """
                DELETE FROM transactions
                WHERE plot_id = %s AND type = %s AND is_reversed = FALSE
                """,
                (plot_id, tx_type),
            )
        return cur.rowcount


def mark_transactions_reversed(conn: Connection, plot_id) -> int:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE transactions
            SET is_reversed = TRUE
            WHERE plot_id = %s AND type = 'credit' AND is_reversed = FALSE
            """,
            (plot_id,),
        )
        return cur.rowcount


# ---------
# wallets
# ---------


def get_wallet(conn: Connection, owner_id, for_update: bool = False) -> Optional[Dict[str, Any]]:
    """
    fetch a wallet row. with for_update the row stays locked until the
    surrounding transaction ends, so concurrent credits cannot lose updates.
    """
    query = """
        SELECT owner_id, direct_sale_balance, downline_sale_balance, total_balance, updated_at
        FROM wallets
        WHERE owner_id = %s
    """
    if for_update:
        query += " FOR UPDATE"
    with conn.cursor() as cur:
        cur.execute(query, (owner_id,))
        return cur.fetchone()


def create_wallet(conn: Connection, owner_id) -> Dict[str, Any]:
    """
    create an empty wallet (idempotent) and return it locked.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO wallets (owner_id, direct_sale_balance, downline_sale_balance, total_balance)
            VALUES (%s, 0, 0, 0)
            ON CONFLICT (owner_id) DO NOTHING
            """,
            (owner_id,),
        )
    return get_wallet(conn, owner_id, for_update=True)


def update_wallet(
    conn: Connection,
    owner_id,
    direct_sale_balance: Decimal,
    downline_sale_balance: Decimal,
    total_balance: Decimal,
) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE wallets
            SET direct_sale_balance = %s,
                downline_sale_balance = %s,
                total_balance = %s,
                updated_at = NOW()
            WHERE owner_id = %s
            """,
            (direct_sale_balance, downline_sale_balance, total_balance, owner_id),
        )
        if cur.rowcount != 1:
            raise ValueError(f"Wallet for {owner_id} not found")
