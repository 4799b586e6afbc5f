"""
lifecycle.py
Allocation state machine

    committed --schedule_funded--> invested
    invested --all_paid (single call)--> funded
    invested --first_payment_received (several calls)--> partially_paid
    partially_paid --all_calls_paid--> funded
    funded | partially_paid --partial_exit--> partially_closed
    any non-terminal --full_exit--> closed
    any non-terminal --write_off--> written_off

closed and written_off are terminal. Reverse moves (e.g. partially_closed
back to invested) are not in the table and therefore rejected.
"""

from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from errors import InvalidTransition
from models import (Allocation, AllocationEvent, AllocationStatus, CallStatus,
                    CapitalCall, TERMINAL_STATUSES)
from utils import money_sum, utc_now

logger = logging.getLogger(__name__)

S = AllocationStatus
E = AllocationEvent


# ============================================================
# TRANSITION TABLE
# ============================================================

TRANSITIONS: Dict[Tuple[AllocationStatus, AllocationEvent], AllocationStatus] = {
    (S.COMMITTED, E.SCHEDULE_FUNDED): S.INVESTED,
    (S.INVESTED, E.ALL_PAID): S.FUNDED,
    (S.INVESTED, E.FIRST_PAYMENT_RECEIVED): S.PARTIALLY_PAID,
    (S.PARTIALLY_PAID, E.ALL_CALLS_PAID): S.FUNDED,
    (S.FUNDED, E.PARTIAL_EXIT): S.PARTIALLY_CLOSED,
    (S.PARTIALLY_PAID, E.PARTIAL_EXIT): S.PARTIALLY_CLOSED,
}

for _status in AllocationStatus:
    if _status not in TERMINAL_STATUSES:
        TRANSITIONS[(_status, E.FULL_EXIT)] = S.CLOSED
        TRANSITIONS[(_status, E.WRITE_OFF)] = S.WRITTEN_OFF


def _as_event(event) -> Optional[AllocationEvent]:
    try:
        return AllocationEvent(event)
    except ValueError:
        return None


def can_transition(status, event) -> bool:
    """True if event is legal from status"""
    evt = _as_event(event)
    return evt is not None and (AllocationStatus(status), evt) in TRANSITIONS


def allowed_events(status) -> List[AllocationEvent]:
    """Events that are legal from status, in declaration order"""
    status = AllocationStatus(status)
    return [evt for evt in AllocationEvent if (status, evt) in TRANSITIONS]


def transition(allocation: Allocation, event, now: Optional[datetime] = None) -> Allocation:
    """
    Apply one lifecycle event

    Returns a new Allocation; the one passed in is never touched.

    Raises:
        InvalidTransition: event is unknown or not legal from the current status
    """
    evt = _as_event(event)
    target = TRANSITIONS.get((allocation.status, evt)) if evt is not None else None
    if target is None:
        raise InvalidTransition(allocation.status, event, allocation_id=allocation.id)

    updated = replace(allocation, status=target, updated_at=now or utc_now())
    logger.info(f"Allocation {allocation.id}: {allocation.status} -> {target} ({evt})")
    return updated


# ============================================================
# EVENTS IMPLIED BY CALL STATE
# ============================================================

def funding_events(allocation: Allocation, calls: Sequence[CapitalCall]) -> List[AllocationEvent]:
    """
    Events implied by the aggregate state of an allocation's calls

    A single-call schedule moves invested -> funded only once that call is
    paid. A multi-call schedule moves to partially_paid on the first money
    received and to funded once every call is paid and the full commitment
    is in. Allocations outside invested/partially_paid are never moved by
    payments.
    """
    if not calls:
        return []

    paid_total = money_sum(c.amount_paid for c in calls)
    all_paid = (
        all(c.status == CallStatus.PAID for c in calls)
        and paid_total == allocation.committed_amount
    )

    if allocation.status == S.INVESTED:
        if len(calls) == 1:
            return [E.ALL_PAID] if all_paid else []
        if paid_total > 0:
            return [E.FIRST_PAYMENT_RECEIVED, E.ALL_CALLS_PAID] if all_paid else [E.FIRST_PAYMENT_RECEIVED]
        return []

    if allocation.status == S.PARTIALLY_PAID and all_paid:
        return [E.ALL_CALLS_PAID]

    return []


def apply_events(allocation: Allocation, events: Sequence[AllocationEvent],
                 now: Optional[datetime] = None) -> Allocation:
    """Apply events in order; nothing is returned unless all of them succeed"""
    current = allocation
    for evt in events:
        current = transition(current, evt, now=now)
    return current


# ============================================================
# REPAIR
# ============================================================

# Statuses that follow from call state alone; exits are only ever explicit
DERIVED_STATUSES = frozenset({S.COMMITTED, S.INVESTED, S.PARTIALLY_PAID, S.FUNDED})


def repair_status(allocation: Allocation, calls: Sequence[CapitalCall],
                  now: Optional[datetime] = None) -> Allocation:
    """
    Re-derive paid amount and funding status from the allocation's calls

    The status is rebuilt by replaying funding_events from the starting
    point the calls imply (committed without calls, invested with them).
    Exited and written-off allocations are returned unchanged, as is an
    allocation that already agrees with its calls.
    """
    if allocation.status not in DERIVED_STATUSES:
        return allocation

    paid = money_sum(c.amount_paid for c in calls)
    base = replace(allocation, status=S.INVESTED if calls else S.COMMITTED, paid_amount=paid)
    status = base.status
    for evt in funding_events(base, calls):
        status = TRANSITIONS[(status, evt)]

    if status == allocation.status and paid == allocation.paid_amount:
        return allocation

    logger.warning(
        f"Allocation {allocation.id}: repaired {allocation.status} -> {status}, "
        f"paid {allocation.paid_amount} -> {paid}"
    )
    return replace(allocation, status=status, paid_amount=paid, updated_at=now or utc_now())
