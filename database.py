"""
database.py
SQLite persistence for allocations, capital calls, payments and distributions

Provides:
- Connection management
- Schema management
- Transactions (BEGIN IMMEDIATE) with optimistic version checks
- Row <-> model mapping
- Audit log
"""

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
import logging

import pandas as pd

from config import DB_BUSY_TIMEOUT_SECONDS, DB_PATH
from errors import (AllocationNotFound, CallNotFound, ConcurrencyConflict, InvalidAllocation,
                    InvalidPayment)
from models import Allocation, CapitalCall, Distribution, Payment
from utils import plain_value, utc_now

# Setup logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TABLE_DEFINITIONS = {
    'allocations': {
        'description': 'Committed capital per fund and deal',
        'key_columns': ['id', 'fund_id', 'deal_id', 'status', 'version'],
    },
    'capital_calls': {
        'description': 'Scheduled and issued capital calls',
        'key_columns': ['id', 'allocation_id', 'call_amount', 'due_date', 'status'],
    },
    'payments': {
        'description': 'Payments received against capital calls',
        'key_columns': ['id', 'call_id', 'amount', 'payment_date'],
    },
    'distributions': {
        'description': 'Cash returned to the fund per allocation',
        'key_columns': ['id', 'allocation_id', 'amount', 'distribution_date'],
    },
    'audit_log': {
        'description': 'Who changed what, and when',
        'key_columns': ['id', 'actor_id', 'action', 'entity_id'],
    },
}


# ============================================================
# CONNECTION & SCHEMA
# ============================================================

def get_db_connection(db_path: str = DB_PATH,
                      busy_timeout: float = DB_BUSY_TIMEOUT_SECONDS) -> sqlite3.Connection:
    """
    Get database connection with optimizations

    Autocommit mode: transactions are opened explicitly with transaction().

    Returns:
        sqlite3.Connection with row_factory set to Row
    """
    conn = sqlite3.connect(db_path, timeout=busy_timeout, check_same_thread=False,
                           isolation_level=None)
    conn.row_factory = sqlite3.Row  # Return rows as dictionaries

    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout * 1000)}")

    return conn


def create_tables(conn: sqlite3.Connection):
    """Create engine tables if missing"""

    conn.execute("""
        CREATE TABLE IF NOT EXISTS allocations (
            id TEXT PRIMARY KEY,
            fund_id TEXT NOT NULL,
            deal_id TEXT NOT NULL,
            security_type TEXT NOT NULL,
            sector TEXT NOT NULL DEFAULT 'unknown',
            stage TEXT NOT NULL DEFAULT 'unknown',
            committed_amount TEXT NOT NULL,   -- Decimal as text, exact cents
            paid_amount TEXT NOT NULL DEFAULT '0.00',
            market_value TEXT NOT NULL DEFAULT '0.00',
            portfolio_weight REAL NOT NULL DEFAULT 0,
            moic REAL NOT NULL DEFAULT 1.0,
            irr REAL NOT NULL DEFAULT 0.0,
            irr_needs_review INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'committed',
            version INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS capital_calls (
            id TEXT PRIMARY KEY,
            allocation_id TEXT NOT NULL REFERENCES allocations(id),
            sequence INTEGER NOT NULL,
            call_amount TEXT NOT NULL,
            call_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'scheduled',
            amount_paid TEXT NOT NULL DEFAULT '0.00',
            notes TEXT
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS payments (
            id TEXT PRIMARY KEY,
            call_id TEXT NOT NULL REFERENCES capital_calls(id),
            amount TEXT NOT NULL,
            payment_date TEXT NOT NULL,
            recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS distributions (
            id TEXT PRIMARY KEY,
            allocation_id TEXT NOT NULL REFERENCES allocations(id),
            amount TEXT NOT NULL,
            distribution_date TEXT NOT NULL,
            type TEXT NOT NULL,
            description TEXT,
            created_at TEXT NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            actor_id TEXT NOT NULL,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            details TEXT,             -- JSON
            logged_at TEXT NOT NULL
        )
    """)


def create_indexes(conn: sqlite3.Connection):
    """Create indexes for common lookups"""
    indexes = [
        "CREATE INDEX IF NOT EXISTS idx_allocations_fund ON allocations(fund_id)",
        "CREATE INDEX IF NOT EXISTS idx_allocations_deal ON allocations(deal_id)",
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_allocations_fund_deal ON allocations(fund_id, deal_id)",
        "CREATE INDEX IF NOT EXISTS idx_capital_calls_allocation ON capital_calls(allocation_id)",
        "CREATE INDEX IF NOT EXISTS idx_capital_calls_due ON capital_calls(due_date)",
        "CREATE INDEX IF NOT EXISTS idx_payments_call ON payments(call_id)",
        "CREATE INDEX IF NOT EXISTS idx_distributions_allocation ON distributions(allocation_id)",
        "CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id)",
    ]

    for sql in indexes:
        try:
            conn.execute(sql)
        except (sqlite3.OperationalError, sqlite3.IntegrityError) as e:
            logger.warning(f"Index creation warning: {e}")


def init_database(conn: sqlite3.Connection) -> Dict[str, Any]:
    """
    Create tables and indexes

    Returns:
        Dictionary with the tables present after initialization
    """
    create_tables(conn)
    create_indexes(conn)
    tables = [r['name'] for r in conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'")]
    logger.info(f"Database ready: {', '.join(sorted(tables))}")
    return {'tables': tables}


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Write transaction that takes the database write lock up front

    Commits on success; rolls back and re-raises on any error.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def is_busy_error(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "locked" in msg or "busy" in msg


# ============================================================
# ROW MAPPING
# ============================================================

def _ts(x: datetime) -> str:
    return x.isoformat()


def _allocation_from_row(row: sqlite3.Row) -> Allocation:
    return Allocation(
        id=row['id'],
        fund_id=row['fund_id'],
        deal_id=row['deal_id'],
        security_type=row['security_type'],
        sector=row['sector'],
        stage=row['stage'],
        committed_amount=row['committed_amount'],
        paid_amount=row['paid_amount'],
        market_value=row['market_value'],
        portfolio_weight=row['portfolio_weight'],
        moic=row['moic'],
        irr=row['irr'],
        irr_needs_review=bool(row['irr_needs_review']),
        status=row['status'],
        version=row['version'],
        created_at=datetime.fromisoformat(row['created_at']),
        updated_at=datetime.fromisoformat(row['updated_at']),
    )


def _payment_from_row(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row['id'],
        call_id=row['call_id'],
        amount=row['amount'],
        payment_date=date.fromisoformat(row['payment_date']),
    )


def _call_from_row(row: sqlite3.Row, payments: Sequence[Payment] = ()) -> CapitalCall:
    return CapitalCall(
        id=row['id'],
        allocation_id=row['allocation_id'],
        sequence=row['sequence'],
        call_amount=row['call_amount'],
        call_date=date.fromisoformat(row['call_date']),
        due_date=date.fromisoformat(row['due_date']),
        status=row['status'],
        amount_paid=row['amount_paid'],
        notes=row['notes'] or "",
        payments=tuple(payments),
    )


def _distribution_from_row(row: sqlite3.Row) -> Distribution:
    return Distribution(
        id=row['id'],
        allocation_id=row['allocation_id'],
        amount=row['amount'],
        distribution_date=date.fromisoformat(row['distribution_date']),
        type=row['type'],
        description=row['description'] or "",
        created_at=datetime.fromisoformat(row['created_at']),
    )


# ============================================================
# ALLOCATIONS
# ============================================================

def insert_allocation(conn: sqlite3.Connection, a: Allocation) -> Allocation:
    """
    Raises:
        InvalidAllocation: the fund already holds an allocation in this deal
    """
    try:
        conn.execute("""
            INSERT INTO allocations (id, fund_id, deal_id, security_type, sector, stage,
                committed_amount, paid_amount, market_value, portfolio_weight, moic, irr,
                irr_needs_review, status, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (a.id, a.fund_id, a.deal_id, a.security_type, a.sector, a.stage,
              str(a.committed_amount), str(a.paid_amount), str(a.market_value),
              a.portfolio_weight, a.moic, a.irr, int(a.irr_needs_review), a.status.value,
              a.version, _ts(a.created_at), _ts(a.updated_at)))
    except sqlite3.IntegrityError as e:
        raise InvalidAllocation(f"Could not store allocation {a.id}: {e}", allocation_id=a.id,
                                fund_id=a.fund_id, deal_id=a.deal_id) from e
    return a


def find_allocation(conn: sqlite3.Connection, fund_id: str, deal_id: str) -> Optional[Allocation]:
    """The fund's allocation in a deal, if it has one"""
    row = conn.execute("SELECT * FROM allocations WHERE fund_id = ? AND deal_id = ?",
                       (fund_id, deal_id)).fetchone()
    return _allocation_from_row(row) if row is not None else None


def update_allocation(conn: sqlite3.Connection, a: Allocation) -> Allocation:
    """
    Write an allocation back if nobody changed it since it was read

    Returns:
        The allocation with its version bumped

    Raises:
        ConcurrencyConflict: stored version differs from a.version
        AllocationNotFound: no such allocation
    """
    cur = conn.execute("""
        UPDATE allocations SET
            sector = ?, stage = ?, security_type = ?,
            committed_amount = ?, paid_amount = ?, market_value = ?,
            portfolio_weight = ?, moic = ?, irr = ?, irr_needs_review = ?,
            status = ?, updated_at = ?, version = version + 1
        WHERE id = ? AND version = ?
    """, (a.sector, a.stage, a.security_type,
          str(a.committed_amount), str(a.paid_amount), str(a.market_value),
          a.portfolio_weight, a.moic, a.irr, int(a.irr_needs_review),
          a.status.value, _ts(a.updated_at), a.id, a.version))

    if cur.rowcount == 0:
        row = conn.execute("SELECT version FROM allocations WHERE id = ?", (a.id,)).fetchone()
        if row is None:
            raise AllocationNotFound(a.id)
        raise ConcurrencyConflict(
            f"Allocation {a.id} changed since it was read",
            allocation_id=a.id, expected_version=a.version, stored_version=row['version'])

    return replace(a, version=a.version + 1)


def get_allocation(conn: sqlite3.Connection, allocation_id: str) -> Allocation:
    row = conn.execute("SELECT * FROM allocations WHERE id = ?", (allocation_id,)).fetchone()
    if row is None:
        raise AllocationNotFound(allocation_id)
    return _allocation_from_row(row)


def list_allocations(conn: sqlite3.Connection, fund_id: str) -> List[Allocation]:
    rows = conn.execute(
        "SELECT * FROM allocations WHERE fund_id = ? ORDER BY created_at, id", (fund_id,))
    return [_allocation_from_row(r) for r in rows]


# ============================================================
# CAPITAL CALLS & PAYMENTS
# ============================================================

def get_calls(conn: sqlite3.Connection, allocation_id: str) -> List[CapitalCall]:
    """All calls for an allocation, with their payments, ordered by sequence"""
    payments: Dict[str, List[Payment]] = {}
    for r in conn.execute("""
        SELECT p.* FROM payments p
        JOIN capital_calls c ON c.id = p.call_id
        WHERE c.allocation_id = ?
        ORDER BY p.payment_date, p.recorded_at, p.id
    """, (allocation_id,)):
        payments.setdefault(r['call_id'], []).append(_payment_from_row(r))

    rows = conn.execute(
        "SELECT * FROM capital_calls WHERE allocation_id = ? ORDER BY sequence", (allocation_id,))
    return [_call_from_row(r, payments.get(r['id'], ())) for r in rows]


def get_call(conn: sqlite3.Connection, call_id: str) -> CapitalCall:
    row = conn.execute("SELECT * FROM capital_calls WHERE id = ?", (call_id,)).fetchone()
    if row is None:
        raise CallNotFound(call_id)
    payments = [_payment_from_row(r) for r in conn.execute(
        "SELECT * FROM payments WHERE call_id = ? ORDER BY payment_date, recorded_at, id", (call_id,))]
    return _call_from_row(row, payments)


def save_call(conn: sqlite3.Connection, c: CapitalCall):
    """Insert or update one call (payments are written separately)"""
    conn.execute("""
        INSERT INTO capital_calls (id, allocation_id, sequence, call_amount, call_date,
            due_date, status, amount_paid, notes)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            sequence = excluded.sequence,
            call_amount = excluded.call_amount,
            call_date = excluded.call_date,
            due_date = excluded.due_date,
            status = excluded.status,
            amount_paid = excluded.amount_paid,
            notes = excluded.notes
    """, (c.id, c.allocation_id, c.sequence, str(c.call_amount), c.call_date.isoformat(),
          c.due_date.isoformat(), c.status.value, str(c.amount_paid), c.notes))


def replace_scheduled_calls(conn: sqlite3.Connection, allocation_id: str,
                            calls: Sequence[CapitalCall]) -> int:
    """
    Store a regenerated schedule

    Scheduled calls not in the new set are deleted; every call in the set is
    upserted.

    Returns:
        Number of calls removed
    """
    keep_ids = [c.id for c in calls]
    placeholders = ",".join("?" for _ in keep_ids) or "''"
    cur = conn.execute(
        f"DELETE FROM capital_calls WHERE allocation_id = ? AND status = 'scheduled' "
        f"AND id NOT IN ({placeholders})",
        (allocation_id, *keep_ids))
    for c in calls:
        save_call(conn, c)
    return cur.rowcount


def insert_payment(conn: sqlite3.Connection, p: Payment):
    """
    Raises:
        InvalidPayment: the payment id is already stored
    """
    try:
        conn.execute(
            "INSERT INTO payments (id, call_id, amount, payment_date) VALUES (?, ?, ?, ?)",
            (p.id, p.call_id, str(p.amount), p.payment_date.isoformat()))
    except sqlite3.IntegrityError as e:
        raise InvalidPayment(f"Could not store payment {p.id}: {e}", payment_id=p.id,
                             call_id=p.call_id) from e


def get_payment(conn: sqlite3.Connection, payment_id: str) -> Optional[Tuple[Payment, str]]:
    """
    Look a payment up across the whole store

    Returns:
        (payment, allocation_id of its call), or None if the id is unknown
    """
    row = conn.execute("""
        SELECT p.*, c.allocation_id FROM payments p
        JOIN capital_calls c ON c.id = p.call_id
        WHERE p.id = ?
    """, (payment_id,)).fetchone()
    if row is None:
        return None
    return _payment_from_row(row), row['allocation_id']


# ============================================================
# DISTRIBUTIONS
# ============================================================

def insert_distribution(conn: sqlite3.Connection, d: Distribution):
    conn.execute("""
        INSERT INTO distributions (id, allocation_id, amount, distribution_date, type,
            description, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (d.id, d.allocation_id, str(d.amount), d.distribution_date.isoformat(),
          d.type.value, d.description, _ts(d.created_at)))


def get_distributions(conn: sqlite3.Connection, allocation_id: str) -> List[Distribution]:
    rows = conn.execute(
        "SELECT * FROM distributions WHERE allocation_id = ? ORDER BY distribution_date, created_at",
        (allocation_id,))
    return [_distribution_from_row(r) for r in rows]


# ============================================================
# AUDIT
# ============================================================

def log_audit(conn: sqlite3.Connection, actor_id: str, action: str, entity_type: str,
              entity_id: str, details: Optional[Dict[str, Any]] = None):
    conn.execute("""
        INSERT INTO audit_log (actor_id, action, entity_type, entity_id, details, logged_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (actor_id, action, entity_type, entity_id,
          json.dumps(plain_value(details or {})), _ts(utc_now())))


def execute_query(conn: sqlite3.Connection, query: str, params: tuple = None) -> pd.DataFrame:
    """
    Execute a SQL query and return results as DataFrame

    Args:
        conn: Open connection
        query: SQL query string
        params: Query parameters (optional)
    """
    if params:
        return pd.read_sql(query, conn, params=params)
    return pd.read_sql(query, conn)


def audit_trail(conn: sqlite3.Connection, entity_id: str) -> pd.DataFrame:
    """Audit entries for one entity, oldest first"""
    return execute_query(
        conn,
        "SELECT actor_id, action, entity_type, entity_id, details, logged_at "
        "FROM audit_log WHERE entity_id = ? ORDER BY id",
        (entity_id,))


def validate_database(conn: sqlite3.Connection) -> Dict[str, Any]:
    """
    Validate database structure

    Every table in TABLE_DEFINITIONS must exist and carry its key columns.

    Returns:
        Dictionary with validation results and per-table row counts
    """
    issues = []
    tables = {}
    for table_name, table_info in TABLE_DEFINITIONS.items():
        try:
            count = conn.execute(f"SELECT COUNT(*) FROM {table_name}").fetchone()[0]
        except sqlite3.OperationalError as e:
            issues.append({
                'severity': 'error',
                'table': table_name,
                'message': f"Table missing or error ({table_info['description']}): {e}"
            })
            continue

        columns = {r['name'] for r in conn.execute(f"PRAGMA table_info({table_name})")}
        missing = [c for c in table_info['key_columns'] if c not in columns]
        if missing:
            issues.append({
                'severity': 'error',
                'table': table_name,
                'message': f"Missing key columns: {', '.join(missing)}"
            })
        tables[table_name] = {'description': table_info['description'], 'rows': count}

    return {
        'valid': len(issues) == 0,
        'issues': issues,
        'tables': tables,
    }
