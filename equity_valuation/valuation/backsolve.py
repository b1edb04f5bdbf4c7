import logging
from typing import Optional

from equity_valuation.models.cap_table import CapTable
from equity_valuation.models.request import OpmParameters
from equity_valuation.models.valuations import BacksolveResult, WaterfallAllocation
from equity_valuation.valuation.breakpoints import build_breakpoints
from equity_valuation.valuation.errors import PreconditionViolation
from equity_valuation.valuation.waterfall import allocate_equity_value

logger = logging.getLogger(__name__)

MAX_BRACKET_DOUBLINGS = 60


def backsolve_equity_value(
    cap_table: CapTable,
    target_class_id: str,
    target_price_per_share: float,
    parameters: Optional[OpmParameters] = None,
    tol: float = 1e-4,
    max_iter: int = 200,
) -> BacksolveResult:
    """Find the total equity value at which the OPM prices a share class at the observed round price.

    The class's allocation per issued share is monotone in total equity value,
    so the root is bracketed by doubling and then found by bisection.
    """
    share_class = cap_table.get_share_class(target_class_id)
    if share_class is None:
        raise PreconditionViolation(f"Unknown share class '{target_class_id}'")
    if share_class.shares_outstanding <= 0:
        raise PreconditionViolation(f"Share class '{target_class_id}' has no shares outstanding")
    if target_price_per_share <= 0:
        raise PreconditionViolation(f"Target price per share must be positive, got {target_price_per_share}")

    params = parameters or OpmParameters()
    breakpoints = build_breakpoints(cap_table)
    shares = share_class.shares_outstanding

    def price_at(equity_value: float) -> tuple[float, WaterfallAllocation]:
        allocation = allocate_equity_value(equity_value, cap_table, params, breakpoints)
        return allocation.allocation_for(target_class_id).dollar_allocation / shares, allocation

    warnings: list[str] = []
    lo = 0.0
    hi = max(target_price_per_share * cap_table.fully_diluted_shares, 1.0)
    hi_price, allocation = price_at(hi)
    doublings = 0
    while hi_price < target_price_per_share and doublings < MAX_BRACKET_DOUBLINGS:
        lo = hi
        hi *= 2.0
        hi_price, allocation = price_at(hi)
        doublings += 1

    if hi_price < target_price_per_share:
        msg = f"Could not bracket an equity value pricing '{target_class_id}' at ${target_price_per_share:,.4f}"
        logger.warning(msg)
        return BacksolveResult(
            total_equity_value=hi,
            share_class_id=target_class_id,
            target_price_per_share=target_price_per_share,
            achieved_price_per_share=hi_price,
            iterations=doublings,
            converged=False,
            allocation=allocation,
            warnings=[msg],
        )

    mid, mid_price = hi, hi_price
    converged = False
    iterations = 0
    for iterations in range(1, max_iter + 1):
        mid = (lo + hi) / 2.0
        mid_price, allocation = price_at(mid)
        if abs(mid_price - target_price_per_share) < tol:
            converged = True
            break
        if mid_price < target_price_per_share:
            lo = mid
        else:
            hi = mid

    if converged:
        logger.info(
            f"Backsolve converged: equity value {mid:,.0f} prices '{target_class_id}' at "
            f"${mid_price:,.4f} after {iterations} iterations"
        )
    else:
        msg = (
            f"Backsolve did not converge within {max_iter} iterations "
            f"(achieved ${mid_price:,.4f} vs target ${target_price_per_share:,.4f})"
        )
        logger.warning(msg)
        warnings.append(msg)

    return BacksolveResult(
        total_equity_value=mid,
        share_class_id=target_class_id,
        target_price_per_share=target_price_per_share,
        achieved_price_per_share=mid_price,
        iterations=iterations,
        converged=converged,
        allocation=allocation,
        warnings=warnings,
    )
