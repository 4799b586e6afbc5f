"""
errors.py
Typed failures raised by the allocation engine

Every error carries a ``context`` dict with the entity ids and the attempted
amount or state, so callers can decide remediation without parsing messages.
"""

from decimal import Decimal
from typing import Any, Dict

from utils import plain_value


class EngineError(Exception):
    """Base class for all engine failures"""

    code = "engine_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        out = {"error": self.code, "message": self.message}
        out.update({k: plain_value(v) for k, v in self.context.items()})
        return out


class InvalidAllocation(EngineError, ValueError):
    code = "invalid_allocation"


class InvalidDistribution(EngineError, ValueError):
    code = "invalid_distribution"


class InvalidTransition(EngineError):
    """Illegal lifecycle move. The allocation is left unchanged."""

    code = "invalid_transition"

    def __init__(self, current_status, event, allocation_id=None):
        cur = getattr(current_status, "value", current_status)
        evt = getattr(event, "value", event)
        super().__init__(
            f"Cannot apply '{evt}' to allocation in status '{cur}'",
            allocation_id=allocation_id,
            current_status=cur,
            event=evt,
        )
        self.current_status = cur
        self.event = evt


class InvalidSchedule(EngineError):
    """Schedule input rejected. No calls are created."""

    code = "invalid_schedule"


class ScheduleAmountMismatch(InvalidSchedule):
    code = "schedule_amount_mismatch"

    def __init__(self, expected: Decimal, actual: Decimal, allocation_id=None):
        super().__init__(
            f"Scheduled calls total {actual} but {expected} must be scheduled",
            allocation_id=allocation_id,
            expected=expected,
            actual=actual,
        )
        self.expected = expected
        self.actual = actual


class PaymentError(EngineError):
    code = "payment_error"


class OverpaymentError(PaymentError):
    """Payment exceeds the call's remaining balance. Nothing is applied."""

    code = "overpayment"

    def __init__(self, call_id, attempted: Decimal, remaining: Decimal, allocation_id=None):
        super().__init__(
            f"Payment of {attempted} exceeds remaining balance {remaining} on call {call_id}",
            call_id=call_id,
            allocation_id=allocation_id,
            attempted=attempted,
            remaining=remaining,
        )
        self.attempted = attempted
        self.remaining = remaining


class InvalidPayment(PaymentError):
    code = "invalid_payment"


class NotFoundError(EngineError, LookupError):
    code = "not_found"


class CallNotFound(NotFoundError):
    code = "call_not_found"

    def __init__(self, call_id, allocation_id=None):
        super().__init__(f"Capital call {call_id} not found",
                         call_id=call_id, allocation_id=allocation_id)


class AllocationNotFound(NotFoundError):
    code = "allocation_not_found"

    def __init__(self, allocation_id):
        super().__init__(f"Allocation {allocation_id} not found", allocation_id=allocation_id)


class IrrNotConvergent(EngineError):
    """Solver found no root. Callers keep the last known IRR."""

    code = "irr_not_convergent"


class PermissionDenied(EngineError):
    code = "permission_denied"


class ConcurrencyConflict(EngineError):
    """Row changed since it was read; safe to retry"""

    code = "concurrency_conflict"


class TransientStoreError(EngineError):
    """Store stayed busy or conflicting after all retries; caller should retry"""

    code = "transient_store_error"
