"""
payments.py
Apply investor payments to capital calls and roll them up to the allocation
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import List, Optional, Sequence
import logging

from errors import CallNotFound, InvalidPayment, OverpaymentError
from lifecycle import apply_events, funding_events
from models import (Allocation, AllocationEvent, CallStatus, CapitalCall,
                    Distribution, DistributionType, Payment, TERMINAL_STATUSES)
from utils import ZERO, as_date, fmt_money, money_sum, to_money, utc_now

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    """
    Outcome of one payment

    duplicate is True when the payment id had already been applied; in that
    case nothing changed and payment/overage_distribution are None.
    """
    allocation: Allocation
    call: CapitalCall
    calls: List[CapitalCall]
    payment: Optional[Payment] = None
    overage_distribution: Optional[Distribution] = None
    events: List[AllocationEvent] = field(default_factory=list)
    duplicate: bool = False

    @property
    def changed(self) -> bool:
        return self.payment is not None


def find_payment(calls: Sequence[CapitalCall], payment_id: str) -> Optional[Payment]:
    for c in calls:
        for p in c.payments:
            if p.id == payment_id:
                return p
    return None


def apply_payment(
    allocation: Allocation,
    calls: Sequence[CapitalCall],
    call_id: str,
    amount,
    payment_date,
    payment_id: Optional[str] = None,
    allow_overage_as_distribution: bool = False,
    now: Optional[datetime] = None,
) -> PaymentResult:
    """
    Apply a payment to one capital call

    The call's amount_paid grows by the payment, the allocation's paid_amount
    is recomputed from all calls, and any lifecycle events implied by the new
    call state are applied. Inputs are not modified.

    Args:
        allocation: Allocation owning the calls
        calls: All of the allocation's capital calls
        call_id: Call being paid
        amount: Payment amount
        payment_date: Date money was received
        payment_id: Caller supplied id; re-applying a known id is a no-op
        allow_overage_as_distribution: Book any excess over the call's
            remaining balance as an 'other' distribution instead of failing

    Raises:
        CallNotFound: call_id is not one of the allocation's calls
        InvalidPayment: negative amount, defaulted call, or closed allocation
        OverpaymentError: amount exceeds the call's remaining balance
    """
    calls = list(calls)
    call = next((c for c in calls if c.id == call_id and c.allocation_id == allocation.id), None)
    if call is None:
        raise CallNotFound(call_id, allocation_id=allocation.id)

    if payment_id is not None and find_payment(calls, payment_id) is not None:
        logger.info(f"Payment {payment_id} already applied to allocation {allocation.id}; skipping")
        return PaymentResult(allocation=allocation, call=call, calls=calls, duplicate=True)

    try:
        amount = to_money(amount)
    except ValueError:
        raise InvalidPayment(f"Not a payment amount: {amount!r}", call_id=call_id,
                             allocation_id=allocation.id)
    payment_date = as_date(payment_date)

    if amount < 0:
        raise InvalidPayment("Payment amount cannot be negative", call_id=call_id,
                             allocation_id=allocation.id, amount=amount)
    if allocation.status in TERMINAL_STATUSES:
        raise InvalidPayment(f"Cannot pay into allocation in status '{allocation.status}'",
                             call_id=call_id, allocation_id=allocation.id, status=allocation.status)
    if call.status == CallStatus.DEFAULTED:
        raise InvalidPayment("Cannot pay a defaulted call", call_id=call_id,
                             allocation_id=allocation.id)

    if amount == ZERO:
        return PaymentResult(allocation=allocation, call=call, calls=calls)

    applied = amount
    excess = ZERO
    if amount > call.remaining:
        if not allow_overage_as_distribution:
            raise OverpaymentError(call_id, amount, call.remaining, allocation_id=allocation.id)
        applied = call.remaining
        excess = amount - applied

    payment = Payment(call_id=call.id, amount=applied, payment_date=payment_date,
                      **({"id": payment_id} if payment_id is not None else {}))

    new_paid = call.amount_paid + applied
    if new_paid == call.call_amount:
        new_status = CallStatus.PAID
    elif new_paid > 0:
        new_status = CallStatus.PARTIAL
    else:
        new_status = call.status
    updated_call = replace(call, amount_paid=new_paid, status=new_status,
                           payments=call.payments + (payment,))
    new_calls = [updated_call if c.id == call.id else c for c in calls]

    now = now or utc_now()
    updated = replace(allocation, paid_amount=money_sum(c.amount_paid for c in new_calls),
                      updated_at=now)
    events = funding_events(updated, new_calls)
    updated = apply_events(updated, events, now=now)

    overage = None
    if excess > 0:
        overage = Distribution(
            allocation_id=allocation.id,
            amount=excess,
            distribution_date=payment_date,
            type=DistributionType.OTHER,
            description=f"Overpayment on capital call {call.id}",
        )
        logger.info(f"Allocation {allocation.id}: {fmt_money(excess)} overpayment booked as distribution")

    logger.info(
        f"Allocation {allocation.id}: {fmt_money(applied)} applied to call {call.id} "
        f"({call.status} -> {new_status}), paid {fmt_money(updated.paid_amount)} "
        f"of {fmt_money(updated.committed_amount)}"
    )

    return PaymentResult(
        allocation=updated,
        call=updated_call,
        calls=new_calls,
        payment=payment,
        overage_distribution=overage,
        events=events,
    )
