import logging
from typing import Optional

from equity_valuation.models.cap_table import CapTable
from equity_valuation.models.request import OpmParameters
from equity_valuation.models.valuations import (
    Breakpoint, SecurityAllocation, SecurityType, SegmentValuation, WaterfallAllocation,
)
from equity_valuation.valuation.breakpoints import build_breakpoints
from equity_valuation.valuation.errors import PreconditionViolation
from equity_valuation.valuation.option_pricing import call_price

logger = logging.getLogger(__name__)


def _value_segments(
    total_equity_value: float,
    breakpoints: list[Breakpoint],
    params: OpmParameters,
) -> list[SegmentValuation]:
    """Value each segment as a call spread on total equity value; the last as a single call."""
    t, r, v = params.time_to_liquidity, params.risk_free_rate, params.volatility
    # One call per boundary; segment i uses calls[i] - calls[i + 1]
    calls = [call_price(total_equity_value, bp.from_value, t, r, v) for bp in breakpoints]

    segments: list[SegmentValuation] = []
    for i, bp in enumerate(breakpoints):
        call_at_to = 0.0 if bp.is_open_ended else calls[i + 1]
        segments.append(SegmentValuation(
            order=bp.order,
            from_value=bp.from_value,
            to_value=bp.to_value,
            call_value_at_from=calls[i],
            call_value_at_to=call_at_to,
            segment_value=calls[i] - call_at_to,
        ))
    return segments


def _securities(cap_table: CapTable) -> list[tuple[str, str, SecurityType, float]]:
    securities: list[tuple[str, str, SecurityType, float]] = []
    for sc in cap_table.share_classes:
        security_type: SecurityType = "preferred" if sc.is_preferred else "common"
        securities.append((sc.id, sc.label, security_type, sc.as_converted_shares))
    for tranche in cap_table.options:
        securities.append((tranche.id, tranche.label, "option", float(tranche.num_options)))
    return securities


def allocate_equity_value(
    total_equity_value: float,
    cap_table: CapTable,
    parameters: Optional[OpmParameters] = None,
    breakpoints: Optional[list[Breakpoint]] = None,
) -> WaterfallAllocation:
    """Allocate total equity value across the cap table with the OPM breakpoint method.

    With zero time to liquidity or zero volatility the call spreads collapse to
    the deterministic exit waterfall. DLOM is not applied here; see apply_dlom.
    """
    if total_equity_value < 0:
        raise PreconditionViolation(f"Total equity value must be >= 0, got {total_equity_value}")

    params = parameters or OpmParameters()
    if breakpoints is None:
        breakpoints = build_breakpoints(cap_table)

    segments = _value_segments(total_equity_value, breakpoints, params)

    dollars: dict[str, float] = {}
    for bp, segment in zip(breakpoints, segments):
        for participant in bp.participating_securities:
            dollars[participant.security_id] = (
                dollars.get(participant.security_id, 0.0)
                + segment.segment_value * participant.percentage / 100.0
            )

    warnings: list[str] = []
    allocations: list[SecurityAllocation] = []
    for security_id, name, security_type, shares in _securities(cap_table):
        amount = dollars.get(security_id, 0.0)
        if shares > 0:
            per_share = amount / shares
        else:
            per_share = 0.0
            warnings.append(f"{name} has no shares outstanding; per-share value reported as 0")
        allocations.append(SecurityAllocation(
            security_id=security_id,
            name=name,
            security_type=security_type,
            shares=shares,
            dollar_allocation=amount,
            per_share_value=per_share,
        ))

    allocated = sum(a.dollar_allocation for a in allocations)
    logger.info(
        f"Allocated {total_equity_value:,.0f} across {len(allocations)} securities "
        f"({len(breakpoints)} breakpoints, T={params.time_to_liquidity}, vol={params.volatility})"
    )
    if abs(allocated - total_equity_value) > 1e-6 * max(1.0, total_equity_value):
        logger.warning(f"Allocation drift: allocated {allocated:,.2f} of {total_equity_value:,.2f}")

    return WaterfallAllocation(
        total_equity_value=total_equity_value,
        parameters=params,
        breakpoints=breakpoints,
        segment_values=segments,
        allocations=allocations,
        warnings=warnings,
    )


def apply_dlom(allocation: WaterfallAllocation, dlom_percentage: float) -> WaterfallAllocation:
    """Return a copy of the allocation with non-marketable per-share values filled in."""
    if not 0.0 <= dlom_percentage <= 100.0:
        raise PreconditionViolation(f"DLOM must be between 0 and 100 percent, got {dlom_percentage}")

    factor = 1.0 - dlom_percentage / 100.0
    discounted = tuple(
        a.model_copy(update={"non_marketable_per_share_value": a.per_share_value * factor})
        for a in allocation.allocations
    )
    return allocation.model_copy(update={
        "allocations": discounted,
        "dlom_percentage": dlom_percentage,
    })
