"""
portfolio.py
Fund-level aggregation across allocations

Weights and concentration are always recomputed from the allocation set;
nothing fund-level is stored as source of truth.
"""

from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from config import IRR_PRECISION, MOIC_PRECISION, WEIGHT_PRECISION
from models import (Allocation, AllocationStatus, CallStatus, CapitalCall,
                    DiversificationMetrics, Distribution)
from utils import ZERO, money_sum, utc_now

logger = logging.getLogger(__name__)


def weight_basis(allocation: Allocation):
    """Market value, or paid amount while the position is not yet marked"""
    if allocation.status == AllocationStatus.WRITTEN_OFF:
        return ZERO
    if allocation.market_value > 0:
        return allocation.market_value
    return allocation.paid_amount


# ============================================================
# WEIGHTS
# ============================================================

def recalculate_weights(allocations: Sequence[Allocation],
                        now: Optional[datetime] = None) -> List[Allocation]:
    """
    Recompute portfolio_weight for every allocation in one fund

    weight = basis / sum of basis over non-written-off allocations.
    Written-off allocations get 0. Allocations whose weight does not change
    are returned as-is, so running this twice changes nothing.

    Returns:
        Allocations in input order
    """
    fund_ids = {a.fund_id for a in allocations}
    if len(fund_ids) > 1:
        raise ValueError(f"Allocations span several funds: {sorted(fund_ids)}")

    total = money_sum(weight_basis(a) for a in allocations)
    now = now or utc_now()

    out = []
    changed = 0
    for a in allocations:
        basis = weight_basis(a)
        weight = float(basis / total) if total > 0 else 0.0
        if weight != a.portfolio_weight:
            a = replace(a, portfolio_weight=weight, updated_at=now)
            changed += 1
        out.append(a)

    if allocations:
        logger.info(f"Fund {allocations[0].fund_id}: recalculated weights "
                    f"({changed} of {len(out)} changed, total basis {total})")
    return out


# ============================================================
# DIVERSIFICATION
# ============================================================

def _buckets(df: pd.DataFrame, column: str) -> Dict[str, float]:
    pct = df.groupby(column)['weight'].sum() * 100.0
    return {str(k): float(v) for k, v in pct.sort_values(ascending=False).items()}


def diversification(allocations: Sequence[Allocation], fund_id: Optional[str] = None) -> DiversificationMetrics:
    """
    Percentage breakdown and concentration of a fund's active allocations

    Buckets (by sector, security type and stage) hold percentages that sum
    to 100. herfindahl is the sum of squared weight fractions; 1.0 means a
    single position.
    """
    if fund_id is None:
        fund_id = allocations[0].fund_id if allocations else ""

    active = [a for a in allocations if a.is_active]
    total = money_sum(weight_basis(a) for a in active)
    if not active or total <= 0:
        return DiversificationMetrics(fund_id=fund_id, allocation_count=len(active))

    df = pd.DataFrame([{
        'sector': a.sector or 'unknown',
        'security_type': a.security_type,
        'stage': a.stage or 'unknown',
        'weight': float(weight_basis(a) / total),
    } for a in active])

    weights = df['weight'].to_numpy()
    hhi = float(np.sum(np.square(weights)))

    return DiversificationMetrics(
        fund_id=fund_id,
        by_sector=_buckets(df, 'sector'),
        by_security_type=_buckets(df, 'security_type'),
        by_stage=_buckets(df, 'stage'),
        herfindahl=hhi,
        effective_positions=1.0 / hhi if hhi > 0 else 0.0,
        largest_weight=float(weights.max()),
        allocation_count=len(active),
    )


# ============================================================
# FUND SUMMARY
# ============================================================

def fund_summary(allocations: Sequence[Allocation],
                 calls: Sequence[CapitalCall] = (),
                 distributions: Sequence[Distribution] = ()) -> Dict:
    """
    Fund totals: commitment, called, paid, uncalled, distributions and
    multiples

    Returns:
        Dict of Decimal amounts and float multiples (MOIC/DPI/TVPI rounded
        for display)
    """
    active = [a for a in allocations if a.is_active]
    committed = money_sum(a.committed_amount for a in active)
    paid = money_sum(a.paid_amount for a in allocations)
    called = money_sum(c.call_amount for c in calls if c.status != CallStatus.SCHEDULED)
    distributed = money_sum(d.amount for d in distributions)
    market_value = money_sum(a.market_value for a in active)

    if paid > 0:
        tvpi = float((distributed + market_value) / paid)
        moic = tvpi
        dpi = float(distributed / paid)
    else:
        moic, dpi, tvpi = 1.0, 0.0, 0.0

    return {
        'allocation_count': len(allocations),
        'active_count': len(active),
        'total_committed': committed,
        'total_called': called,
        'total_paid': paid,
        'total_uncalled': committed - called if committed > called else ZERO,
        'total_outstanding': money_sum(a.outstanding_amount for a in active),
        'total_distributions': distributed,
        'total_market_value': market_value,
        'moic': round(moic, MOIC_PRECISION),
        'dpi': round(dpi, MOIC_PRECISION),
        'tvpi': round(tvpi, MOIC_PRECISION),
    }


def allocations_frame(allocations: Sequence[Allocation]) -> pd.DataFrame:
    """
    Allocation table for reporting

    Returns:
        DataFrame with one row per allocation, amounts as floats
    """
    cols = ['id', 'deal_id', 'security_type', 'sector', 'stage', 'status',
            'committed_amount', 'paid_amount', 'outstanding_amount', 'market_value',
            'portfolio_weight', 'moic', 'irr']
    if not allocations:
        return pd.DataFrame(columns=cols)

    rows = [{
        'id': a.id,
        'deal_id': a.deal_id,
        'security_type': a.security_type,
        'sector': a.sector,
        'stage': a.stage,
        'status': a.status.value,
        'committed_amount': float(a.committed_amount),
        'paid_amount': float(a.paid_amount),
        'outstanding_amount': float(a.outstanding_amount),
        'market_value': float(a.market_value),
        'portfolio_weight': round(a.portfolio_weight, WEIGHT_PRECISION),
        'moic': round(a.moic, MOIC_PRECISION),
        'irr': round(a.irr, IRR_PRECISION),
    } for a in allocations]

    return pd.DataFrame(rows, columns=cols)
