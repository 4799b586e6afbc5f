"""
engine.py
Allocation engine: atomic operations over the store

Every write runs in one BEGIN IMMEDIATE transaction under a per-allocation
lock. Busy databases and version conflicts are retried a bounded number of
times. Follow-up work (metrics refresh, weight recalculation, notifications)
runs only after the transaction commits and never undoes it.
"""

import sqlite3
import threading
import time
import weakref
from contextlib import contextmanager
from dataclasses import replace
from datetime import date
from typing import Any, Callable, Dict, Iterator, List, Optional
import logging

import capital_calls
import database as db
import lifecycle
import metrics
import payments
import portfolio
from config import EngineSettings, load_settings
from errors import (CallNotFound, ConcurrencyConflict, EngineError, InvalidAllocation,
                    InvalidPayment, PermissionDenied, TransientStoreError)
from models import (Actor, Allocation, AllocationEvent, AllocationStatus, CapitalCall,
                    DiversificationMetrics, Distribution, DistributionType,
                    PerformanceMetrics, ScheduleSpec, TERMINAL_STATUSES)
from utils import as_date, plain_value, utc_now, utc_today

logger = logging.getLogger(__name__)

Notifier = Callable[[str, Dict[str, Any]], None]

SYSTEM_ACTOR = Actor(user_id="system", can_write=True)

# Notification events
CALL_DUE = "call_due"
DISTRIBUTION_RECEIVED = "distribution_received"
ALLOCATION_UPDATED = "allocation_updated"


class _KeyLock:
    """Lock for one allocation or fund, dropped once no caller holds it"""

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc):
        self._lock.release()


class AllocationEngine:
    """
    Request/response facade over the allocation store

    Args:
        conn: Open sqlite3 connection (one is opened from settings if omitted)
        settings: EngineSettings; defaults come from load_settings()
        clock: Returns today's date; defaults to the UTC calendar day
        notifier: Called as notifier(event, payload) after commits
    """

    def __init__(self, conn: Optional[sqlite3.Connection] = None,
                 settings: Optional[EngineSettings] = None,
                 clock: Optional[Callable[[], date]] = None,
                 notifier: Optional[Notifier] = None):
        self.settings = settings or load_settings()
        self.conn = conn or db.get_db_connection(self.settings.db_path, self.settings.busy_timeout)
        self.clock = clock or utc_today
        self.notifier = notifier

        self._conn_lock = threading.RLock()
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

        with self._conn_lock:
            db.init_database(self.conn)

    def close(self):
        with self._conn_lock:
            self.conn.close()

    # ============================================================
    # PLUMBING
    # ============================================================

    def _lock_for(self, key: str) -> _KeyLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = _KeyLock()
                self._locks[key] = lock
            return lock

    @staticmethod
    def _authorize(actor: Optional[Actor], action: str):
        if actor is None or not actor.can_write:
            raise PermissionDenied(f"Not allowed to {action}",
                                   actor=getattr(actor, "user_id", None), action=action)

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        with self._conn_lock:
            yield self.conn

    def _write(self, lock_key: str, action: str, fn):
        """
        Run fn(conn) in a write transaction, retrying busy/conflict failures

        Raises:
            TransientStoreError: still busy or conflicting after max_retries
        """
        attempts = self.settings.max_retries
        with self._lock_for(lock_key):
            for attempt in range(1, attempts + 1):
                try:
                    with self._conn_lock, db.transaction(self.conn) as conn:
                        return fn(conn)
                except ConcurrencyConflict as e:
                    failure = e
                except sqlite3.OperationalError as e:
                    if not db.is_busy_error(e):
                        raise
                    failure = e
                logger.warning(f"{action} on {lock_key}: attempt {attempt}/{attempts} failed ({failure})")
                if attempt < attempts:
                    time.sleep(0.05 * attempt)

        raise TransientStoreError(f"{action} did not complete after {attempts} attempts; retry later",
                                  key=lock_key, action=action, cause=str(failure)) from failure

    def _notify(self, event: str, payload: Dict[str, Any]):
        if self.notifier is None:
            return
        try:
            self.notifier(event, plain_value(payload))
        except Exception as e:
            logger.warning(f"Notifier failed for {event}: {e}")

    def _cascade(self, allocation: Allocation, refresh: bool = True, weights: bool = True):
        """Post-commit follow-ups; failures are logged and can be re-run"""
        if refresh:
            try:
                self._refresh(allocation.id)
            except (EngineError, sqlite3.Error) as e:
                logger.warning(f"Metrics refresh failed for allocation {allocation.id}: {e}")
        if weights:
            try:
                self._recalculate(allocation.fund_id)
            except (EngineError, sqlite3.Error) as e:
                logger.warning(f"Weight recalculation failed for fund {allocation.fund_id}: {e}")

    # ============================================================
    # READS
    # ============================================================

    def get_allocation(self, allocation_id: str) -> Allocation:
        with self._read() as conn:
            return db.get_allocation(conn, allocation_id)

    def list_allocations(self, fund_id: str) -> List[Allocation]:
        with self._read() as conn:
            return db.list_allocations(conn, fund_id)

    def get_calls(self, allocation_id: str) -> List[CapitalCall]:
        with self._read() as conn:
            return db.get_calls(conn, allocation_id)

    def get_distributions(self, allocation_id: str) -> List[Distribution]:
        with self._read() as conn:
            return db.get_distributions(conn, allocation_id)

    def allowed_events(self, allocation_id: str) -> List[AllocationEvent]:
        return lifecycle.allowed_events(self.get_allocation(allocation_id).status)

    # ============================================================
    # ALLOCATIONS
    # ============================================================

    def create_allocation(self, actor: Actor, fund_id: str, deal_id: str, security_type: str,
                          committed_amount, sector: str = "unknown", stage: str = "unknown",
                          market_value=0) -> Allocation:
        """
        Record a new commitment in status 'committed'

        Raises:
            InvalidAllocation: bad amounts, or the fund already holds this deal
        """
        self._authorize(actor, "create allocation")
        allocation = Allocation(fund_id=fund_id, deal_id=deal_id, security_type=security_type,
                                committed_amount=committed_amount, sector=sector, stage=stage,
                                market_value=market_value)

        def op(conn):
            existing = db.find_allocation(conn, allocation.fund_id, allocation.deal_id)
            if existing is not None:
                raise InvalidAllocation(
                    f"Fund {allocation.fund_id} already has an allocation in deal {allocation.deal_id}",
                    fund_id=allocation.fund_id, deal_id=allocation.deal_id, allocation_id=existing.id)
            db.insert_allocation(conn, allocation)
            db.log_audit(conn, actor.user_id, "create", "allocation", allocation.id,
                         {"fund_id": fund_id, "deal_id": deal_id,
                          "committed_amount": allocation.committed_amount})
            return allocation

        created = self._write(f"fund:{fund_id}", "create_allocation", op)
        logger.info(f"Created allocation {created.id} in fund {fund_id}: {created.committed_amount} committed")
        self._cascade(created, refresh=False)
        created = self.get_allocation(created.id)
        self._notify(ALLOCATION_UPDATED, {"allocation": created})
        return created

    def transition(self, actor: Actor, allocation_id: str, event) -> Allocation:
        """
        Apply a lifecycle event

        Raises:
            InvalidTransition: event not legal from the current status
        """
        self._authorize(actor, "change allocation status")

        def op(conn):
            current = db.get_allocation(conn, allocation_id)
            moved = lifecycle.transition(current, event)
            saved = db.update_allocation(conn, moved)
            db.log_audit(conn, actor.user_id, "transition", "allocation", allocation_id,
                         {"from": current.status, "to": saved.status, "event": event})
            return saved

        saved = self._write(allocation_id, "transition", op)
        if saved.status in TERMINAL_STATUSES or saved.status == AllocationStatus.PARTIALLY_CLOSED:
            self._cascade(saved)
        self._notify(ALLOCATION_UPDATED, {"allocation": saved, "event": event})
        return saved

    def update_market_value(self, actor: Actor, allocation_id: str, market_value) -> Allocation:
        """Mark the position to a new value; metrics and weights follow"""
        self._authorize(actor, "update market value")

        def op(conn):
            current = db.get_allocation(conn, allocation_id)
            saved = db.update_allocation(conn, replace(current, market_value=market_value,
                                                       updated_at=utc_now()))
            db.log_audit(conn, actor.user_id, "mark", "allocation", allocation_id,
                         {"from": current.market_value, "to": saved.market_value})
            return saved

        saved = self._write(allocation_id, "update_market_value", op)
        self._cascade(saved)
        saved = self.get_allocation(allocation_id)
        self._notify(ALLOCATION_UPDATED, {"allocation": saved})
        return saved

    # ============================================================
    # CAPITAL CALLS
    # ============================================================

    def generate_schedule(self, actor: Actor, allocation_id: str, spec: ScheduleSpec) -> List[CapitalCall]:
        """
        Create or replace the allocation's call schedule

        A committed allocation moves to invested once its schedule exists.

        Raises:
            InvalidSchedule, ScheduleAmountMismatch: nothing is stored
        """
        self._authorize(actor, "schedule capital calls")

        def op(conn):
            allocation = db.get_allocation(conn, allocation_id)
            existing = db.get_calls(conn, allocation_id)
            calls = capital_calls.generate_schedule(
                allocation, spec, existing,
                due_days=self.settings.due_days,
                default_call_percentage=self.settings.default_call_percentage,
            )
            removed = db.replace_scheduled_calls(conn, allocation_id, calls)
            if allocation.status == AllocationStatus.COMMITTED:
                allocation = db.update_allocation(
                    conn, lifecycle.transition(allocation, AllocationEvent.SCHEDULE_FUNDED))
            db.log_audit(conn, actor.user_id, "schedule", "allocation", allocation_id,
                         {"type": spec.type, "calls": len(calls), "replaced": removed})
            return allocation, calls

        allocation, calls = self._write(allocation_id, "generate_schedule", op)
        self._notify(ALLOCATION_UPDATED, {"allocation": allocation, "calls": calls})
        return calls

    def _change_call(self, actor: Actor, allocation_id: str, call_id: str, action: str, change,
                     details=None):
        self._authorize(actor, f"{action} capital call")

        def op(conn):
            call = db.get_call(conn, call_id)
            if call.allocation_id != allocation_id:
                raise CallNotFound(call_id, allocation_id=allocation_id)
            updated = change(call)
            db.save_call(conn, updated)
            db.log_audit(conn, actor.user_id, action, "capital_call", call_id,
                         details(call, updated) if details else {"from": call.status, "to": updated.status})
            return updated

        return self._write(allocation_id, action, op)

    def mark_call_called(self, actor: Actor, allocation_id: str, call_id: str) -> CapitalCall:
        """Issue a scheduled call and tell the investor it is due"""
        call = self._change_call(actor, allocation_id, call_id, "called", capital_calls.mark_called)
        self._notify(CALL_DUE, {"allocation_id": allocation_id, "call": call,
                                "days_until_due": (call.due_date - self.clock()).days})
        return call

    def mark_call_defaulted(self, actor: Actor, allocation_id: str, call_id: str) -> CapitalCall:
        call = self._change_call(actor, allocation_id, call_id, "defaulted", capital_calls.mark_defaulted)
        self._notify(ALLOCATION_UPDATED, {"allocation_id": allocation_id, "call": call})
        return call

    def update_call_dates(self, actor: Actor, allocation_id: str, call_id: str, call_date,
                          due_date=None) -> CapitalCall:
        """
        Move a scheduled or called call to new dates

        Raises:
            InvalidSchedule: call has money against it, or due date before call date
        """
        def change(call):
            return capital_calls.reschedule_call_dates(call, call_date, due_date,
                                                       due_days=self.settings.due_days)

        def details(before, after):
            return {"call_date": [before.call_date, after.call_date],
                    "due_date": [before.due_date, after.due_date]}

        call = self._change_call(actor, allocation_id, call_id, "redate", change, details)
        self._notify(ALLOCATION_UPDATED, {"allocation_id": allocation_id, "call": call})
        return call

    def overdue_calls(self, allocation_id: str, as_of: Optional[date] = None) -> List[CapitalCall]:
        return capital_calls.overdue_calls(self.get_calls(allocation_id), as_date(as_of or self.clock()))

    def send_due_reminders(self, fund_id: str, as_of: Optional[date] = None) -> List[Dict[str, Any]]:
        """
        Notify call_due for every open call due in one of the reminder windows

        Returns:
            The reminder payloads that were sent
        """
        as_of = as_date(as_of or self.clock())
        sent = []
        for allocation in self.list_allocations(fund_id):
            due = capital_calls.calls_due_for_reminder(
                self.get_calls(allocation.id), as_of, self.settings.reminder_days)
            for call, days_left in due:
                payload = {"allocation_id": allocation.id, "call": call, "days_until_due": days_left}
                self._notify(CALL_DUE, payload)
                sent.append(payload)
        logger.info(f"Fund {fund_id}: {len(sent)} capital call reminders for {as_of}")
        return sent

    def verify_allocation(self, allocation_id: str) -> List[str]:
        """Integrity issues between an allocation and its calls (empty if none)"""
        with self._read() as conn:
            allocation = db.get_allocation(conn, allocation_id)
            calls = db.get_calls(conn, allocation_id)
        return capital_calls.validate_capital_calls(allocation, calls)

    def repair_allocation(self, actor: Actor, allocation_id: str) -> Allocation:
        """Re-derive paid amount and status from the stored calls"""
        self._authorize(actor, "repair allocation")

        def op(conn):
            current = db.get_allocation(conn, allocation_id)
            repaired = lifecycle.repair_status(current, db.get_calls(conn, allocation_id))
            if repaired is current:
                return current, False
            saved = db.update_allocation(conn, repaired)
            db.log_audit(conn, actor.user_id, "repair", "allocation", allocation_id,
                         {"status": [current.status, saved.status],
                          "paid_amount": [current.paid_amount, saved.paid_amount]})
            return saved, True

        saved, changed = self._write(allocation_id, "repair_allocation", op)
        if changed:
            self._cascade(saved)
            saved = self.get_allocation(allocation_id)
            self._notify(ALLOCATION_UPDATED, {"allocation": saved})
        return saved

    def repair_fund(self, actor: Actor, fund_id: str) -> Dict[str, Any]:
        """
        Repair every allocation in a fund whose status disagrees with its calls

        Returns:
            Dictionary with the repaired allocation ids and per-allocation errors
        """
        self._authorize(actor, "repair allocations")
        repaired, errors = [], []
        for allocation in self.list_allocations(fund_id):
            try:
                saved = self.repair_allocation(actor, allocation.id)
            except EngineError as e:
                errors.append({"allocation_id": allocation.id, "error": e.to_dict()})
                continue
            if saved.status != allocation.status or saved.paid_amount != allocation.paid_amount:
                repaired.append(allocation.id)

        logger.info(f"Fund {fund_id}: repaired {len(repaired)} allocations, {len(errors)} errors")
        return {"fund_id": fund_id, "repaired": repaired, "errors": errors}

    # ============================================================
    # PAYMENTS & DISTRIBUTIONS
    # ============================================================

    def apply_payment(self, actor: Actor, allocation_id: str, call_id: str, amount,
                      payment_date=None, payment_id: Optional[str] = None,
                      allow_overage_as_distribution: bool = False) -> payments.PaymentResult:
        """
        Apply a payment to one call, atomically with its allocation roll-up

        A payment id is unique across the store: re-sending one already applied
        to this allocation is a no-op, reusing one from another allocation is
        rejected.

        Raises:
            CallNotFound, OverpaymentError, InvalidPayment: nothing is stored
        """
        self._authorize(actor, "apply payment")
        payment_date = as_date(payment_date or self.clock())

        def op(conn):
            if payment_id is not None:
                known = db.get_payment(conn, payment_id)
                if known is not None and known[1] != allocation_id:
                    raise InvalidPayment(
                        f"Payment id {payment_id} was already used on allocation {known[1]}",
                        payment_id=payment_id, allocation_id=allocation_id, call_id=call_id,
                        other_allocation_id=known[1])
            allocation = db.get_allocation(conn, allocation_id)
            calls = db.get_calls(conn, allocation_id)
            result = payments.apply_payment(
                allocation, calls, call_id, amount, payment_date,
                payment_id=payment_id,
                allow_overage_as_distribution=allow_overage_as_distribution,
            )
            if not result.changed:
                return result

            db.save_call(conn, result.call)
            db.insert_payment(conn, result.payment)
            result.allocation = db.update_allocation(conn, result.allocation)
            if result.overage_distribution is not None:
                db.insert_distribution(conn, result.overage_distribution)
            db.log_audit(conn, actor.user_id, "payment", "capital_call", call_id,
                         {"payment_id": result.payment.id, "amount": result.payment.amount,
                          "overage": getattr(result.overage_distribution, "amount", None),
                          "events": result.events})
            return result

        result = self._write(allocation_id, "apply_payment", op)
        if result.changed:
            self._cascade(result.allocation)
            result.allocation = self.get_allocation(allocation_id)
            if result.overage_distribution is not None:
                self._notify(DISTRIBUTION_RECEIVED, {"distribution": result.overage_distribution})
            self._notify(ALLOCATION_UPDATED, {"allocation": result.allocation,
                                              "payment": result.payment, "events": result.events})
        return result

    def record_distribution(self, actor: Actor, allocation_id: str, amount, distribution_date=None,
                            type=DistributionType.DIVIDEND, description: str = "") -> Distribution:
        """Record cash returned on an allocation; metrics are refreshed after commit"""
        self._authorize(actor, "record distribution")
        distribution_date = as_date(distribution_date or self.clock())

        def op(conn):
            allocation = db.get_allocation(conn, allocation_id)
            dist = metrics.record_distribution(allocation, amount, distribution_date, type, description)
            db.insert_distribution(conn, dist)
            db.log_audit(conn, actor.user_id, "distribution", "allocation", allocation_id,
                         {"distribution_id": dist.id, "amount": dist.amount, "type": dist.type})
            return allocation, dist

        allocation, dist = self._write(allocation_id, "record_distribution", op)
        self._cascade(allocation, weights=False)
        self._notify(DISTRIBUTION_RECEIVED, {"distribution": dist})
        return dist

    # ============================================================
    # METRICS & PORTFOLIO
    # ============================================================

    def compute_metrics(self, allocation_id: str, as_of: Optional[date] = None) -> PerformanceMetrics:
        """Current performance figures; nothing is stored"""
        with self._read() as conn:
            allocation = db.get_allocation(conn, allocation_id)
            calls = db.get_calls(conn, allocation_id)
            dists = db.get_distributions(conn, allocation_id)
        return metrics.compute_metrics(allocation, calls, dists, as_of or self.clock())

    def _refresh(self, allocation_id: str, actor: Actor = SYSTEM_ACTOR,
                 as_of: Optional[date] = None) -> Allocation:
        as_of = as_date(as_of or self.clock())

        def op(conn):
            allocation = db.get_allocation(conn, allocation_id)
            result = metrics.compute_metrics(allocation, db.get_calls(conn, allocation_id),
                                             db.get_distributions(conn, allocation_id), as_of)
            updated = metrics.apply_metrics(allocation, result)
            if (updated.moic, updated.irr, updated.irr_needs_review) == \
                    (allocation.moic, allocation.irr, allocation.irr_needs_review):
                return allocation
            saved = db.update_allocation(conn, updated)
            db.log_audit(conn, actor.user_id, "metrics", "allocation", allocation_id,
                         {"moic": saved.moic, "irr": saved.irr, "warnings": result.warnings})
            return saved

        return self._write(allocation_id, "refresh_metrics", op)

    def refresh_metrics(self, actor: Actor, allocation_id: str, as_of: Optional[date] = None) -> Allocation:
        """Recompute and store MOIC/IRR; safe to re-run after a failed cascade"""
        self._authorize(actor, "refresh metrics")
        return self._refresh(allocation_id, actor, as_of)

    def _recalculate(self, fund_id: str, actor: Actor = SYSTEM_ACTOR) -> List[Allocation]:
        def op(conn):
            current = db.list_allocations(conn, fund_id)
            updated = portfolio.recalculate_weights(current)
            out = []
            for before, after in zip(current, updated):
                if after is not before:
                    after = db.update_allocation(conn, after)
                out.append(after)
            changed = sum(1 for b, a in zip(current, out) if a is not b)
            if changed:
                db.log_audit(conn, actor.user_id, "weights", "fund", fund_id, {"changed": changed})
            return out

        return self._write(f"fund:{fund_id}", "recalculate_weights", op)

    def recalculate_weights(self, actor: Actor, fund_id: str) -> List[Allocation]:
        """Recompute every allocation's portfolio weight in a fund"""
        self._authorize(actor, "recalculate weights")
        return self._recalculate(fund_id, actor)

    def diversification(self, fund_id: str) -> DiversificationMetrics:
        return portfolio.diversification(self.list_allocations(fund_id), fund_id=fund_id)

    def fund_summary(self, fund_id: str) -> Dict[str, Any]:
        """Fund totals across all allocations"""
        with self._read() as conn:
            allocations = db.list_allocations(conn, fund_id)
            calls, dists = [], []
            for a in allocations:
                calls.extend(db.get_calls(conn, a.id))
                dists.extend(db.get_distributions(conn, a.id))
        summary = portfolio.fund_summary(allocations, calls, dists)
        summary['fund_id'] = fund_id
        return summary
