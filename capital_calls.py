"""
capital_calls.py
Capital call schedule generation, call status changes and call summaries
"""

from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math

import pandas as pd

from config import (DEFAULT_CALL_PERCENTAGE, DEFAULT_DUE_DAYS, MAX_CALL_COUNT,
                    SCHEDULE_CADENCE_MONTHS)
from errors import InvalidSchedule, InvalidTransition, ScheduleAmountMismatch
from models import (Allocation, AllocationStatus, CallStatus, CapitalCall,
                    ScheduleSpec, ScheduleType)
from utils import (ZERO, add_months, as_date, fmt_date, fmt_money, money_sum, percent_of,
                   split_amount)

logger = logging.getLogger(__name__)

# Allocations that may receive a (new) schedule
SCHEDULABLE_STATUSES = frozenset({
    AllocationStatus.COMMITTED,
    AllocationStatus.INVESTED,
    AllocationStatus.PARTIALLY_PAID,
})

# Manual call status changes. Payments move calls to partial/paid.
CALL_TRANSITIONS: Dict[CallStatus, Tuple[CallStatus, ...]] = {
    CallStatus.SCHEDULED: (CallStatus.CALLED, CallStatus.DEFAULTED),
    CallStatus.CALLED: (CallStatus.DEFAULTED,),
    CallStatus.PARTIAL: (CallStatus.DEFAULTED,),
    CallStatus.PAID: (),
    CallStatus.DEFAULTED: (),
}

# Calls whose dates can still move
RESCHEDULABLE_CALL_STATUSES = frozenset({CallStatus.SCHEDULED, CallStatus.CALLED})


# ============================================================
# SCHEDULE GENERATION
# ============================================================

def _periodic_amounts(target: Decimal, spec: ScheduleSpec,
                      default_pct: float) -> List[Decimal]:
    """
    Cent-exact amounts for a periodic schedule

    - count only: even split, last call absorbs rounding
    - percentage (with or without count): each call is pct of the target,
      last call takes whatever is left
    - neither: the configured default per-period percentage
    """
    count = spec.call_count
    pct = spec.call_percentage

    if count is not None and (not isinstance(count, int) or isinstance(count, bool)):
        raise InvalidSchedule("call_count must be an integer", call_count=count)
    if count is not None and not 1 <= count <= MAX_CALL_COUNT:
        raise InvalidSchedule(f"call_count must be between 1 and {MAX_CALL_COUNT}", call_count=count)
    if pct is not None and not 0 < pct <= 100:
        raise InvalidSchedule("call_percentage must be in (0, 100]", call_percentage=pct)

    if pct is None and count is not None:
        return split_amount(target, count)

    if pct is None:
        pct = default_pct
    if count is None:
        count = math.ceil(round(100.0 / pct, 9))
        if count > MAX_CALL_COUNT:
            raise InvalidSchedule(f"call_percentage yields more than {MAX_CALL_COUNT} calls",
                                  call_percentage=pct)
    elif pct * (count - 1) >= 100:
        raise InvalidSchedule("call_percentage x call_count exceeds 100% before the last call",
                              call_percentage=pct, call_count=count)

    per_call = percent_of(target, pct)
    amounts = [per_call] * (count - 1)
    last = target - money_sum(amounts)
    if last <= 0:
        raise InvalidSchedule("Schedule leaves nothing for the final call",
                              call_percentage=pct, call_count=count)
    return amounts + [last]


def generate_schedule(
    allocation: Allocation,
    spec: ScheduleSpec,
    existing_calls: Sequence[CapitalCall] = (),
    due_days: int = DEFAULT_DUE_DAYS,
    default_call_percentage: float = DEFAULT_CALL_PERCENTAGE,
) -> List[CapitalCall]:
    """
    Build the complete call set for an allocation

    Calls already called, partially paid, paid or defaulted are kept as-is;
    only 'scheduled' calls are replaced. The new calls cover exactly the
    committed amount minus what the kept calls already requested.

    Returns:
        Kept calls followed by the new calls, ordered by sequence

    Raises:
        InvalidSchedule: bad inputs, or the allocation cannot be scheduled
        ScheduleAmountMismatch: custom amounts do not add up to the target
    """
    if allocation.status not in SCHEDULABLE_STATUSES:
        raise InvalidSchedule(
            f"Cannot schedule calls for allocation in status '{allocation.status}'",
            allocation_id=allocation.id, status=allocation.status)

    foreign = [c.id for c in existing_calls if c.allocation_id != allocation.id]
    if foreign:
        raise InvalidSchedule("Existing calls belong to another allocation",
                              allocation_id=allocation.id, call_ids=foreign)

    kept = sorted((c for c in existing_calls if c.is_locked), key=lambda c: (c.call_date, c.sequence))
    target = allocation.committed_amount - money_sum(c.call_amount for c in kept)
    if target <= 0:
        raise InvalidSchedule("Nothing left to schedule", allocation_id=allocation.id,
                              committed_amount=allocation.committed_amount)

    if spec.type == ScheduleType.CUSTOM:
        if not spec.custom_calls:
            raise InvalidSchedule("Custom schedule needs at least one call", allocation_id=allocation.id)
        planned = sorted(spec.custom_calls, key=lambda t: t[0])
        if any(a <= 0 for _, a in planned):
            raise InvalidSchedule("Custom call amounts must be greater than 0", allocation_id=allocation.id)
        actual = money_sum(a for _, a in planned)
        if actual != target:
            raise ScheduleAmountMismatch(target, actual, allocation_id=allocation.id)
    else:
        if spec.first_call_date is None:
            raise InvalidSchedule("first_call_date is required", allocation_id=allocation.id,
                                  schedule_type=spec.type)
        if spec.type == ScheduleType.SINGLE:
            amounts = [target]
        else:
            amounts = _periodic_amounts(target, spec, default_call_percentage)
        months = SCHEDULE_CADENCE_MONTHS.get(spec.type.value, 0)
        planned = [(add_months(spec.first_call_date, i * months), amt)
                   for i, amt in enumerate(amounts)]

    if due_days < 0:
        raise InvalidSchedule("due_days must not be negative", due_days=due_days)

    start_seq = max((c.sequence for c in kept), default=0) + 1
    total_new = len(planned)
    new_calls = [
        CapitalCall(
            allocation_id=allocation.id,
            call_amount=amount,
            call_date=call_date,
            due_date=call_date + timedelta(days=due_days),
            sequence=start_seq + i,
            notes=f"Scheduled payment {i + 1} of {total_new}",
        )
        for i, (call_date, amount) in enumerate(planned)
    ]

    replaced = len(existing_calls) - len(kept)
    logger.info(
        f"Allocation {allocation.id}: {spec.type} schedule of {total_new} calls "
        f"totalling {fmt_money(target)} ({len(kept)} kept, {replaced} replaced)"
    )
    return kept + new_calls


# ============================================================
# CALL STATUS CHANGES
# ============================================================

def _change_call_status(call: CapitalCall, new_status: CallStatus) -> CapitalCall:
    if new_status not in CALL_TRANSITIONS[call.status]:
        raise InvalidTransition(call.status, new_status, allocation_id=call.allocation_id)
    logger.info(f"Capital call {call.id}: {call.status} -> {new_status}")
    return replace(call, status=new_status)


def mark_called(call: CapitalCall) -> CapitalCall:
    """Issue a scheduled call to the investor"""
    return _change_call_status(call, CallStatus.CALLED)


def mark_defaulted(call: CapitalCall) -> CapitalCall:
    """Record that an unpaid call will not be paid. Kept for audit."""
    return _change_call_status(call, CallStatus.DEFAULTED)


def reschedule_call_dates(call: CapitalCall, call_date, due_date=None,
                          due_days: int = DEFAULT_DUE_DAYS) -> CapitalCall:
    """
    Move a call that has not received money to new dates

    Args:
        call: Call to move; must be scheduled or called
        call_date: New call date
        due_date: New due date (defaults to call_date + due_days)

    Raises:
        InvalidSchedule: call already has payments or is defaulted, or the
            due date falls before the call date
    """
    if call.status not in RESCHEDULABLE_CALL_STATUSES:
        raise InvalidSchedule(f"Cannot change dates of a call in status '{call.status}'",
                              call_id=call.id, allocation_id=call.allocation_id, status=call.status)
    call_date = as_date(call_date)
    due_date = as_date(due_date) if due_date is not None else call_date + timedelta(days=due_days)
    if due_date < call_date:
        raise InvalidSchedule("Due date must not be before the call date", call_id=call.id,
                              allocation_id=call.allocation_id, call_date=call_date, due_date=due_date)

    logger.info(f"Capital call {call.id}: dates {fmt_date(call.call_date)}/{fmt_date(call.due_date)} "
                f"-> {fmt_date(call_date)}/{fmt_date(due_date)}")
    return replace(call, call_date=call_date, due_date=due_date)


# ============================================================
# DUE DATES
# ============================================================

def _open(call: CapitalCall) -> bool:
    return call.status in (CallStatus.SCHEDULED, CallStatus.CALLED, CallStatus.PARTIAL)


def overdue_calls(calls: Sequence[CapitalCall], as_of: date) -> List[CapitalCall]:
    """Open calls whose due date has passed"""
    return [c for c in calls if _open(c) and c.due_date < as_of]


def calls_due_for_reminder(calls: Sequence[CapitalCall], as_of: date,
                           reminder_days: Sequence[int]) -> List[Tuple[CapitalCall, int]]:
    """
    Open calls due exactly N days from as_of, for each N in reminder_days

    Returns:
        List of (call, days_until_due)
    """
    out = []
    for c in calls:
        if not _open(c):
            continue
        days_left = (c.due_date - as_of).days
        if days_left in reminder_days:
            out.append((c, days_left))
    return out


# ============================================================
# VALIDATION & SUMMARIES
# ============================================================

def validate_capital_calls(allocation: Allocation, calls: Sequence[CapitalCall]) -> List[str]:
    """
    Check an allocation against its calls and return list of issues

    Returns:
        List of validation error messages (empty if consistent)
    """
    errors = []

    for c in calls:
        if c.allocation_id != allocation.id:
            errors.append(f"Call {c.id} belongs to allocation {c.allocation_id}")
        if c.amount_paid > c.call_amount:
            errors.append(f"Call {c.id} paid {c.amount_paid} exceeds call amount {c.call_amount}")
        if c.status == CallStatus.PAID and c.amount_paid != c.call_amount:
            errors.append(f"Call {c.id} is marked paid but {c.remaining} remains")
        if c.status == CallStatus.PARTIAL and not ZERO < c.amount_paid < c.call_amount:
            errors.append(f"Call {c.id} is marked partial with {c.amount_paid} paid")
        if money_sum(p.amount for p in c.payments) != c.amount_paid:
            errors.append(f"Call {c.id} payments do not add up to amount paid")

    called = money_sum(c.call_amount for c in calls)
    if called > allocation.committed_amount:
        errors.append(f"Calls total {called} exceeds commitment {allocation.committed_amount}")

    paid = money_sum(c.amount_paid for c in calls)
    if paid != allocation.paid_amount:
        errors.append(f"Allocation paid amount {allocation.paid_amount} does not match calls ({paid})")

    if allocation.is_active and allocation.paid_amount + allocation.outstanding_amount != allocation.committed_amount:
        errors.append("Paid plus outstanding does not equal committed amount")

    return errors


def capital_calls_summary_table(calls: Sequence[CapitalCall]) -> pd.DataFrame:
    """
    Create a display table of capital calls

    Returns:
        DataFrame with columns: sequence, call_date, due_date, call_amount,
        amount_paid, remaining, status
    """
    cols = ['sequence', 'call_date', 'due_date', 'call_amount', 'amount_paid', 'remaining', 'status']
    if not calls:
        return pd.DataFrame(columns=cols)

    rows = [{
        'sequence': c.sequence,
        'call_date': fmt_date(c.call_date),
        'due_date': fmt_date(c.due_date),
        'call_amount': fmt_money(c.call_amount),
        'amount_paid': fmt_money(c.amount_paid),
        'remaining': fmt_money(c.remaining),
        'status': c.status.value,
    } for c in sorted(calls, key=lambda c: c.sequence)]

    return pd.DataFrame(rows, columns=cols)


def capital_calls_by_status(calls: Sequence[CapitalCall]) -> pd.DataFrame:
    """
    Summarize calls by status

    Returns:
        DataFrame with columns: status, num_calls, total_called, total_paid
    """
    cols = ['status', 'num_calls', 'total_called', 'total_paid']
    if not calls:
        return pd.DataFrame(columns=cols)

    df = pd.DataFrame([{
        'status': c.status.value,
        'call_amount': float(c.call_amount),
        'amount_paid': float(c.amount_paid),
    } for c in calls])

    summary = df.groupby('status').agg(
        num_calls=('call_amount', 'count'),
        total_called=('call_amount', 'sum'),
        total_paid=('amount_paid', 'sum'),
    ).reset_index()

    return summary[cols]


def next_open_call(calls: Sequence[CapitalCall]) -> Optional[CapitalCall]:
    """Earliest call still awaiting money"""
    open_calls = [c for c in calls if _open(c)]
    if not open_calls:
        return None
    return min(open_calls, key=lambda c: (c.due_date, c.sequence))
