"""
models.py
Data structures for fund allocations, capital calls and distributions
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from config import DEFAULT_IRR, DEFAULT_MOIC, MAX_COMMITMENT, MIN_COMMITMENT
from errors import InvalidAllocation, InvalidDistribution, InvalidPayment, InvalidSchedule
from utils import ZERO, as_date, plain_value, to_money, utc_now


def new_id() -> str:
    return uuid4().hex


# ============================================================
# STATUS VOCABULARIES
# ============================================================
# Wire values must match the external vocabulary exactly.

class _Vocabulary(str, Enum):
    def __str__(self) -> str:
        return self.value


class AllocationStatus(_Vocabulary):
    COMMITTED = "committed"
    INVESTED = "invested"
    FUNDED = "funded"
    PARTIALLY_PAID = "partially_paid"
    PARTIALLY_CLOSED = "partially_closed"
    CLOSED = "closed"
    WRITTEN_OFF = "written_off"


TERMINAL_STATUSES = frozenset({AllocationStatus.CLOSED, AllocationStatus.WRITTEN_OFF})


class AllocationEvent(_Vocabulary):
    SCHEDULE_FUNDED = "schedule_funded"
    ALL_PAID = "all_paid"
    FIRST_PAYMENT_RECEIVED = "first_payment_received"
    ALL_CALLS_PAID = "all_calls_paid"
    PARTIAL_EXIT = "partial_exit"
    FULL_EXIT = "full_exit"
    WRITE_OFF = "write_off"


class CallStatus(_Vocabulary):
    SCHEDULED = "scheduled"
    CALLED = "called"
    PARTIAL = "partial"
    PAID = "paid"
    DEFAULTED = "defaulted"


class ScheduleType(_Vocabulary):
    SINGLE = "single"
    QUARTERLY = "quarterly"
    MONTHLY = "monthly"
    BIANNUAL = "biannual"
    ANNUAL = "annual"
    CUSTOM = "custom"


class DistributionType(_Vocabulary):
    DIVIDEND = "dividend"
    CAPITAL_GAIN = "capital_gain"
    RETURN_OF_CAPITAL = "return_of_capital"
    LIQUIDATION = "liquidation"
    OTHER = "other"


# ============================================================
# CALLER IDENTITY
# ============================================================

@dataclass(frozen=True)
class Actor:
    """Who is asking, and whether the host already authorised writes"""
    user_id: str
    can_write: bool = True


# ============================================================
# CAPITAL CALLS
# ============================================================

@dataclass
class Payment:
    """One payment received against a capital call"""
    call_id: str
    amount: Decimal
    payment_date: date
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.amount = to_money(self.amount)
        self.payment_date = as_date(self.payment_date)


@dataclass
class CapitalCall:
    """
    One scheduled cash request against an allocation

    amount_paid never exceeds call_amount. Calls that have left the
    'scheduled' status are locked and survive re-scheduling.
    """
    allocation_id: str
    call_amount: Decimal
    call_date: date
    due_date: date
    status: CallStatus = CallStatus.SCHEDULED
    amount_paid: Decimal = ZERO
    sequence: int = 1
    notes: str = ""
    payments: Tuple[Payment, ...] = ()
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.call_amount = to_money(self.call_amount)
        self.amount_paid = to_money(self.amount_paid)
        self.call_date = as_date(self.call_date)
        self.due_date = as_date(self.due_date)
        self.status = CallStatus(self.status)
        self.payments = tuple(self.payments)

        if self.call_amount <= 0:
            raise InvalidSchedule("Call amount must be greater than 0",
                                  call_id=self.id, call_amount=self.call_amount)
        if self.due_date < self.call_date:
            raise InvalidSchedule("Due date must not precede call date",
                                  call_id=self.id, call_date=self.call_date, due_date=self.due_date)
        if not ZERO <= self.amount_paid <= self.call_amount:
            raise InvalidPayment("Amount paid must be between 0 and the call amount",
                                 call_id=self.id, amount_paid=self.amount_paid,
                                 call_amount=self.call_amount)

    @property
    def remaining(self) -> Decimal:
        return self.call_amount - self.amount_paid

    @property
    def is_locked(self) -> bool:
        return self.status != CallStatus.SCHEDULED

    def to_dict(self) -> Dict:
        d = plain_value(self)
        d["remaining"] = str(self.remaining)
        return d


@dataclass
class ScheduleSpec:
    """
    How to split an allocation's commitment into calls

    custom_calls holds (call_date, amount) pairs and is only read for
    ScheduleType.CUSTOM.
    """
    type: ScheduleType
    first_call_date: Optional[date] = None
    call_count: Optional[int] = None
    call_percentage: Optional[float] = None
    custom_calls: Tuple[Tuple[date, Decimal], ...] = ()

    def __post_init__(self):
        try:
            self.type = ScheduleType(self.type)
        except ValueError:
            raise InvalidSchedule(f"Unknown schedule type: {self.type!r}", schedule_type=self.type)
        if self.first_call_date is not None:
            self.first_call_date = as_date(self.first_call_date)
        try:
            self.custom_calls = tuple((as_date(d), to_money(a)) for d, a in self.custom_calls)
        except (TypeError, ValueError) as e:
            raise InvalidSchedule(f"Malformed custom call: {e}")


# ============================================================
# ALLOCATIONS
# ============================================================

@dataclass
class Allocation:
    """
    One unit of committed capital into a deal within a fund

    outstanding_amount is derived: committed - paid, or 0 once written off.
    portfolio_weight is a fraction of fund value (0.25 == 25%); irr is an
    annual decimal rate.
    """
    fund_id: str
    deal_id: str
    security_type: str
    committed_amount: Decimal
    paid_amount: Decimal = ZERO
    portfolio_weight: float = 0.0
    market_value: Decimal = ZERO
    moic: float = DEFAULT_MOIC
    irr: float = DEFAULT_IRR
    status: AllocationStatus = AllocationStatus.COMMITTED
    sector: str = "unknown"
    stage: str = "unknown"
    irr_needs_review: bool = False
    version: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.fund_id = str(self.fund_id)
        self.deal_id = str(self.deal_id)
        self.committed_amount = to_money(self.committed_amount)
        self.paid_amount = to_money(self.paid_amount)
        self.market_value = to_money(self.market_value)
        self.status = AllocationStatus(self.status)

        if not MIN_COMMITMENT <= self.committed_amount <= MAX_COMMITMENT:
            raise InvalidAllocation(
                f"Committed amount must be between {MIN_COMMITMENT:,} and {MAX_COMMITMENT:,}",
                allocation_id=self.id, committed_amount=self.committed_amount)
        if not ZERO <= self.paid_amount <= self.committed_amount:
            raise InvalidAllocation("Paid amount must be between 0 and the committed amount",
                                    allocation_id=self.id, paid_amount=self.paid_amount)
        if self.market_value < 0:
            raise InvalidAllocation("Market value cannot be negative",
                                    allocation_id=self.id, market_value=self.market_value)
        if not (self.security_type or "").strip():
            raise InvalidAllocation("Security type is required", allocation_id=self.id)

    @property
    def outstanding_amount(self) -> Decimal:
        if self.status == AllocationStatus.WRITTEN_OFF:
            return ZERO
        return self.committed_amount - self.paid_amount

    @property
    def is_active(self) -> bool:
        return self.status != AllocationStatus.WRITTEN_OFF

    def to_dict(self) -> Dict:
        d = plain_value(self)
        d["outstanding_amount"] = str(self.outstanding_amount)
        return d


# ============================================================
# DISTRIBUTIONS
# ============================================================

@dataclass
class Distribution:
    """A cash return against an allocation. Immutable once recorded."""
    allocation_id: str
    amount: Decimal
    distribution_date: date
    type: DistributionType = DistributionType.DIVIDEND
    description: str = ""
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.amount = to_money(self.amount)
        self.distribution_date = as_date(self.distribution_date)
        try:
            self.type = DistributionType(self.type)
        except ValueError:
            raise InvalidDistribution(f"Unknown distribution type: {self.type!r}",
                                      allocation_id=self.allocation_id, type=self.type)
        if self.amount <= 0:
            raise InvalidDistribution("Distribution amount must be greater than 0",
                                      allocation_id=self.allocation_id, amount=self.amount)

    def to_dict(self) -> Dict:
        return plain_value(self)


# ============================================================
# COMPUTED RESULTS
# ============================================================

@dataclass
class PerformanceMetrics:
    """Return metrics for one allocation as of a date"""
    allocation_id: str
    as_of: date
    moic: float
    irr: float
    total_return: Decimal
    realized_return: Decimal
    unrealized_return: Decimal
    dpi: float
    tvpi: float
    paid_in: Decimal
    irr_converged: bool = True
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return plain_value(self)


@dataclass
class DiversificationMetrics:
    """Percentage buckets and concentration for a fund's active allocations"""
    fund_id: str
    by_sector: Dict[str, float] = field(default_factory=dict)
    by_security_type: Dict[str, float] = field(default_factory=dict)
    by_stage: Dict[str, float] = field(default_factory=dict)
    herfindahl: float = 0.0
    effective_positions: float = 0.0
    largest_weight: float = 0.0
    allocation_count: int = 0

    def to_dict(self) -> Dict:
        return plain_value(self)
