"""
metrics.py
Allocation performance metrics: XIRR, MOIC, DPI/TVPI, and distributions
"""

from dataclasses import replace
from datetime import date, datetime
from typing import List, Optional, Sequence, Tuple
import logging

import numpy as np
from scipy.optimize import brentq, newton

from config import (IRR_INITIAL_GUESS, IRR_LOWER_BOUND, IRR_MAX_ITERATIONS,
                    IRR_TOLERANCE, IRR_UPPER_BOUND, MIN_DAYS_FOR_IRR)
from errors import InvalidDistribution, IrrNotConvergent
from models import (Allocation, AllocationStatus, CapitalCall, Distribution,
                    DistributionType, PerformanceMetrics)
from utils import ZERO, as_date, money_sum, to_money, utc_now, year_fraction

logger = logging.getLogger(__name__)

CashFlows = List[Tuple[date, float]]


# ============================================================
# XIRR
# ============================================================

def _years_and_amounts(cfs: CashFlows) -> Tuple[np.ndarray, np.ndarray]:
    cfs = sorted(cfs, key=lambda t: t[0])
    t0 = cfs[0][0]
    years = np.array([year_fraction(t0, d) for d, _ in cfs], dtype=float)
    amounts = np.array([float(a) for _, a in cfs], dtype=float)
    return years, amounts


def xnpv(rate: float, cfs: CashFlows) -> float:
    """
    Net present value with irregular cashflow dates

    Args:
        rate: Annual discount rate (as decimal, e.g., 0.15 for 15%)
        cfs: List of (date, amount) tuples

    Returns:
        Net present value (ACT/365, matching Excel XIRR)
    """
    if not cfs or rate <= -1.0:
        return float('inf')
    years, amounts = _years_and_amounts(cfs)
    return float(np.sum(amounts / np.power(1.0 + rate, years)))


def _xnpv_prime(rate: float, years: np.ndarray, amounts: np.ndarray) -> float:
    return float(np.sum(-years * amounts / np.power(1.0 + rate, years + 1.0)))


def solve_irr(cfs: CashFlows, guess: float = IRR_INITIAL_GUESS) -> float:
    """
    Solve XNPV(rate) = 0

    Newton-Raphson from the guess first; if it fails or lands outside the
    allowed range, Brent's method over [IRR_LOWER_BOUND, IRR_UPPER_BOUND].

    Raises:
        IrrNotConvergent: neither method found a root
    """
    if not cfs or len(cfs) < 2:
        raise IrrNotConvergent("At least two cash flows are required", flows=len(cfs or []))

    years, amounts = _years_and_amounts(cfs)

    def f(r):
        if r <= -1.0:
            return float('inf')
        return float(np.sum(amounts / np.power(1.0 + r, years)))

    def fprime(r):
        return _xnpv_prime(r, years, amounts)

    try:
        with np.errstate(all='ignore'):
            rate = newton(f, guess, fprime=fprime, rtol=IRR_TOLERANCE, maxiter=IRR_MAX_ITERATIONS)
        rate = float(rate)
        if np.isfinite(rate) and IRR_LOWER_BOUND <= rate <= IRR_UPPER_BOUND:
            return rate
    except (RuntimeError, OverflowError, ZeroDivisionError, FloatingPointError):
        pass

    try:
        with np.errstate(all='ignore'):
            rate = brentq(f, IRR_LOWER_BOUND, IRR_UPPER_BOUND,
                          rtol=IRR_TOLERANCE, maxiter=IRR_MAX_ITERATIONS)
        return float(rate)
    except (ValueError, RuntimeError) as e:
        raise IrrNotConvergent(f"IRR did not converge: {e}", flows=len(cfs))


def xirr(cfs: CashFlows) -> Optional[float]:
    """
    Internal Rate of Return with irregular cashflow dates

    Args:
        cfs: List of (date, amount) tuples
             Negative amounts = investments
             Positive amounts = returns

    Returns:
        Annual IRR as decimal (e.g., 0.15 for 15%)
        None if the flows have no sign change or no root was found
    """
    if not cfs or len(cfs) < 2:
        return None

    amounts = [a for _, a in cfs]
    if min(amounts) >= 0 or max(amounts) <= 0:
        return None

    try:
        return solve_irr(cfs)
    except IrrNotConvergent:
        return None


# ============================================================
# CASH FLOWS & MULTIPLES
# ============================================================

def build_cash_flows(
    calls: Sequence[CapitalCall],
    distributions: Sequence[Distribution],
    market_value,
    as_of: date,
) -> CashFlows:
    """
    Dated flows from the investor's point of view

    Each payment is an outflow on its payment date, each distribution an
    inflow on its date, and the current market value an inflow at as_of.
    Flows after as_of are ignored.
    """
    as_of = as_date(as_of)
    cfs = []
    for c in calls:
        for p in c.payments:
            if p.amount > 0 and p.payment_date <= as_of:
                cfs.append((p.payment_date, -float(p.amount)))
    for d in distributions:
        if d.distribution_date <= as_of:
            cfs.append((d.distribution_date, float(d.amount)))
    mv = to_money(market_value)
    if mv > 0:
        cfs.append((as_of, float(mv)))
    return sorted(cfs, key=lambda t: t[0])


def calculate_moic(paid_in, distributed, unrealized_value=ZERO) -> float:
    """
    Multiple on Invested Capital

    MOIC = (Total Distributions + Unrealized Value) / Paid In

    Returns:
        MOIC as multiple (e.g., 1.5 for 1.5x); exactly 1.0 when nothing is paid in
    """
    paid_in = to_money(paid_in)
    if paid_in == 0:
        return 1.0
    return float((to_money(distributed) + to_money(unrealized_value)) / paid_in)


# ============================================================
# DISTRIBUTIONS
# ============================================================

def record_distribution(
    allocation: Allocation,
    amount,
    distribution_date,
    type=DistributionType.DIVIDEND,
    description: str = "",
) -> Distribution:
    """
    Create a distribution against an allocation

    Committed and paid amounts are untouched; the distribution only feeds
    the return metrics.

    Raises:
        InvalidDistribution: non-positive amount, unknown type, or the
            allocation has been written off
    """
    if allocation.status == AllocationStatus.WRITTEN_OFF:
        raise InvalidDistribution("Cannot record a distribution on a written-off allocation",
                                  allocation_id=allocation.id)
    try:
        amount = to_money(amount)
    except ValueError:
        raise InvalidDistribution(f"Not a distribution amount: {amount!r}", allocation_id=allocation.id)

    dist = Distribution(
        allocation_id=allocation.id,
        amount=amount,
        distribution_date=distribution_date,
        type=type,
        description=description,
    )
    logger.info(f"Allocation {allocation.id}: {dist.type} distribution of {dist.amount} on {dist.distribution_date}")
    return dist


# ============================================================
# PERFORMANCE
# ============================================================

def compute_metrics(
    allocation: Allocation,
    calls: Sequence[CapitalCall],
    distributions: Sequence[Distribution],
    as_of,
) -> PerformanceMetrics:
    """
    Calculate return metrics for one allocation

    MOIC and the return figures use the allocation's paid amount and the
    distributions dated on or before as_of. IRR is an XIRR over dated
    payments, distributions and the market value at as_of.
    When the IRR is undefined or the solver fails, the allocation's last IRR
    is kept and a warning is attached; irr_converged is False only for
    solver failure.
    """
    as_of = as_date(as_of)
    paid_in = allocation.paid_amount
    realized = money_sum(d.amount for d in distributions if d.distribution_date <= as_of)
    unrealized = allocation.market_value

    moic = calculate_moic(paid_in, realized, unrealized)
    if paid_in > 0:
        dpi = float(realized / paid_in)
        tvpi = float((realized + unrealized) / paid_in)
    else:
        dpi = 0.0
        tvpi = 0.0

    irr = allocation.irr
    converged = True
    warnings: List[str] = []

    cfs = build_cash_flows(calls, distributions, unrealized, as_of)
    amounts = [a for _, a in cfs]
    if not cfs or min(amounts) >= 0 or max(amounts) <= 0:
        warnings.append("IRR undefined: cash flows need both an outflow and an inflow")
    elif (cfs[-1][0] - cfs[0][0]).days < MIN_DAYS_FOR_IRR:
        warnings.append(f"IRR not computed: cash flows span fewer than {MIN_DAYS_FOR_IRR} days")
    else:
        try:
            irr = solve_irr(cfs)
        except IrrNotConvergent as e:
            converged = False
            warnings.append(f"IRR did not converge; keeping last value {allocation.irr:.4f}")
            logger.warning(f"Allocation {allocation.id}: {e.message}; keeping IRR {allocation.irr}")

    return PerformanceMetrics(
        allocation_id=allocation.id,
        as_of=as_of,
        moic=moic,
        irr=irr,
        total_return=realized + unrealized - paid_in,
        realized_return=realized,
        unrealized_return=unrealized,
        dpi=dpi,
        tvpi=tvpi,
        paid_in=paid_in,
        irr_converged=converged,
        warnings=warnings,
    )


def apply_metrics(allocation: Allocation, metrics: PerformanceMetrics,
                  now: Optional[datetime] = None) -> Allocation:
    """Copy computed MOIC/IRR onto the allocation"""
    return replace(
        allocation,
        moic=metrics.moic,
        irr=metrics.irr,
        irr_needs_review=not metrics.irr_converged,
        updated_at=now or utc_now(),
    )
