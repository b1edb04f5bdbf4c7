import logging
from dataclasses import dataclass
from itertools import groupby
from typing import Optional

from equity_valuation.models.cap_table import CapTable, ShareClass
from equity_valuation.models.valuations import Breakpoint, BreakpointType, ParticipatingSecurity
from equity_valuation.valuation.errors import ModelInconsistency

logger = logging.getLogger(__name__)

# When several events share a threshold, the segment is labelled by the first match
_EVENT_PRECEDENCE: list[BreakpointType] = [
    "participation_cap",
    "voluntary_conversion",
    "option_exercise",
]


@dataclass(frozen=True)
class _Interval:
    """Range of common value-per-share over which a security shares residual value."""
    security_id: str
    name: str
    shares: float
    start: float
    end: Optional[float] = None
    start_event: Optional[BreakpointType] = None
    end_event: Optional[BreakpointType] = None


def _liquidation_breakpoints(cap_table: CapTable) -> list[Breakpoint]:
    """One segment per seniority rank; pari passu classes share it pro rata by claim."""
    claimants = sorted(
        (sc for sc in cap_table.preferred if sc.liquidation_claim > 0),
        key=lambda sc: sc.seniority,
    )
    breakpoints: list[Breakpoint] = []
    cursor = 0.0
    for seniority, group in groupby(claimants, key=lambda sc: sc.seniority):
        group = list(group)
        group_claim = sum(sc.liquidation_claim for sc in group)
        group_shares = float(sum(sc.shares_outstanding for sc in group))
        participants = [
            ParticipatingSecurity(
                security_id=sc.id,
                name=sc.label,
                percentage=sc.liquidation_claim / group_claim * 100.0,
                shares=float(sc.shares_outstanding),
            )
            for sc in group
        ]
        names = ", ".join(sc.label for sc in group)
        breakpoints.append(Breakpoint(
            order=len(breakpoints) + 1,
            breakpoint_type="liquidation_preference",
            from_value=cursor,
            to_value=cursor + group_claim,
            participating_securities=participants,
            shares_participating=group_shares,
            section_rvps=group_claim / group_shares,
            description=f"Liquidation preference (seniority {seniority}): {names}",
        ))
        cursor += group_claim
    return breakpoints


def _preferred_intervals(sc: ShareClass) -> list[_Interval]:
    shares = sc.as_converted_shares
    claim = sc.liquidation_claim

    if sc.preference_type == "participating":
        return [_Interval(sc.id, sc.label, shares, 0.0)]

    if sc.preference_type == "participating-with-cap":
        cap = sc.cap_amount
        if cap is None:
            raise ModelInconsistency(
                f"Share class '{sc.id}' is participating-with-cap but has no participation_cap"
            )
        if cap > claim:
            # Participates until the cap binds, then sits out until converting beats the cap
            return [
                _Interval(sc.id, sc.label, shares, 0.0, (cap - claim) / shares,
                          end_event="participation_cap"),
                _Interval(sc.id, sc.label, shares, cap / shares,
                          start_event="voluntary_conversion"),
            ]

    return [_Interval(sc.id, sc.label, shares, claim / shares, start_event="voluntary_conversion")]


def _residual_intervals(cap_table: CapTable) -> list[_Interval]:
    intervals: list[_Interval] = []
    for sc in cap_table.share_classes:
        if sc.shares_outstanding == 0:
            continue
        if sc.is_preferred:
            intervals.extend(_preferred_intervals(sc))
        else:
            intervals.append(_Interval(sc.id, sc.label, float(sc.shares_outstanding), 0.0))
    for tranche in cap_table.options:
        if tranche.num_options == 0:
            continue
        intervals.append(_Interval(
            tranche.id, tranche.label, float(tranche.num_options), tranche.exercise_price,
            start_event="option_exercise",
        ))
    return intervals


def _segment_type(r: float, intervals: list[_Interval]) -> BreakpointType:
    if r == 0:
        return "pro_rata_distribution"
    events = {i.start_event for i in intervals if i.start == r and i.start_event}
    events |= {i.end_event for i in intervals if i.end == r and i.end_event}
    for event in _EVENT_PRECEDENCE:
        if event in events:
            return event
    return "pro_rata_distribution"


def build_breakpoints(cap_table: CapTable) -> list[Breakpoint]:
    """Build the ordered OPM breakpoints that partition total equity value [0, inf).

    Liquidation preferences come first in seniority order. Above them, value is
    shared per as-converted share, and each option strike, conversion point and
    participation cap closes a segment. Raises ModelInconsistency when a segment
    would have no participating shares.
    """
    intervals = _residual_intervals(cap_table)
    if not intervals:
        raise ModelInconsistency("Cap table has no shares or options outstanding")

    breakpoints = _liquidation_breakpoints(cap_table)
    cursor = breakpoints[-1].to_value if breakpoints else 0.0

    thresholds = sorted({0.0} | {i.start for i in intervals} | {i.end for i in intervals if i.end is not None})
    bounds: list[tuple[float, Optional[float]]] = list(zip(thresholds, thresholds[1:]))
    bounds.append((thresholds[-1], None))

    for r_from, r_to in bounds:
        active = [
            i for i in intervals
            if i.start <= r_from and (i.end is None or (r_to is not None and i.end >= r_to))
        ]
        n_shares = sum(i.shares for i in active)
        if n_shares <= 0:
            upper = "inf" if r_to is None else f"{r_to:,.4f}"
            raise ModelInconsistency(
                f"No securities participate between common value per share "
                f"{r_from:,.4f} and {upper}"
            )

        participants = [
            ParticipatingSecurity(
                security_id=i.security_id,
                name=i.name,
                percentage=i.shares / n_shares * 100.0,
                shares=i.shares,
            )
            for i in active
        ]
        segment_type = _segment_type(r_from, intervals)
        names = ", ".join(i.name for i in active)

        if r_to is None:
            breakpoints.append(Breakpoint(
                order=len(breakpoints) + 1,
                breakpoint_type=segment_type,
                from_value=cursor,
                participating_securities=participants,
                shares_participating=n_shares,
                description=f"Residual shared by {names}",
            ))
            continue

        width = (r_to - r_from) * n_shares
        if width <= 0:
            continue
        breakpoints.append(Breakpoint(
            order=len(breakpoints) + 1,
            breakpoint_type=segment_type,
            from_value=cursor,
            to_value=cursor + width,
            participating_securities=participants,
            shares_participating=n_shares,
            section_rvps=r_to - r_from,
            cumulative_rvps=r_to,
            description=f"Shared by {names} up to ${r_to:,.4f} per common share",
        ))
        cursor += width

    logger.info(
        f"Built {len(breakpoints)} breakpoints for {len(cap_table.share_classes)} share classes "
        f"and {len(cap_table.options)} option tranches"
    )
    return breakpoints
