"""Hybrid scenario method: probability-weighted OPM allocations.

Each scenario has its own equity value and OPM parameters. At most one scenario
is left open and solved so that the probability-weighted price of the round's
share class equals the observed round price.
"""
import logging
import math
from typing import Optional, Sequence

from equity_valuation.models.request import HybridScenario, HybridValuationInputs, OpmParameters
from equity_valuation.models.valuations import (
    HybridScenarioResult, HybridValuationResult, SecurityAllocation, WaterfallAllocation,
)
from equity_valuation.valuation.backsolve import backsolve_equity_value
from equity_valuation.valuation.breakpoints import build_breakpoints
from equity_valuation.valuation.errors import PreconditionViolation
from equity_valuation.valuation.waterfall import allocate_equity_value

logger = logging.getLogger(__name__)

# Probability totals within 1% of 100 are accepted silently, within 10% with a warning
PROBABILITY_TOLERANCE = 1.0
PROBABILITY_LIMIT = 10.0
PRICE_TOLERANCE = 1e-4


def normalize_probabilities(probabilities: Sequence[float]) -> tuple[list[float], list[str]]:
    """Scale percentage probabilities to weights summing to 1."""
    total = sum(probabilities)
    if total <= 0:
        raise PreconditionViolation("Scenario probabilities sum to zero")
    off_by = abs(total - 100.0)
    if off_by > PROBABILITY_LIMIT:
        raise PreconditionViolation(f"Scenario probabilities sum to {total:.1f}%, expected 100%")

    warnings: list[str] = []
    if off_by > PROBABILITY_TOLERANCE:
        warnings.append(f"Scenario probabilities sum to {total:.1f}%; normalized to 100%")
    return [p / total for p in probabilities], warnings


def _scenario_parameters(base: OpmParameters, scenario: HybridScenario) -> OpmParameters:
    if scenario.opm_parameters is None:
        return base
    return base.model_copy(update=scenario.opm_parameters.model_dump(exclude_unset=True))


def _weighted_allocations(
    scenarios: list[HybridScenarioResult],
) -> tuple[SecurityAllocation, ...]:
    template = scenarios[0].allocation.allocations
    weighted = []
    for j, security in enumerate(template):
        weighted.append(security.model_copy(update={
            "dollar_allocation": sum(s.probability * s.allocation.allocations[j].dollar_allocation for s in scenarios),
            "per_share_value": sum(s.probability * s.allocation.allocations[j].per_share_value for s in scenarios),
            "non_marketable_per_share_value": None,
        }))
    return tuple(weighted)


def compute_hybrid_valuation(inputs: HybridValuationInputs) -> HybridValuationResult:
    cap_table = inputs.cap_table
    target = inputs.target
    probabilities, warnings = normalize_probabilities([s.probability for s in inputs.scenarios])
    breakpoints = build_breakpoints(cap_table)

    target_shares: Optional[float] = None
    if target is not None:
        share_class = cap_table.get_share_class(target.share_class_id)
        if share_class is None:
            raise PreconditionViolation(f"Unknown share class '{target.share_class_id}'")
        if share_class.shares_outstanding <= 0:
            raise PreconditionViolation(f"Share class '{target.share_class_id}' has no shares outstanding")
        target_shares = share_class.shares_outstanding

    def class_price(allocation: WaterfallAllocation) -> Optional[float]:
        if target is None:
            return None
        return allocation.allocation_for(target.share_class_id).dollar_allocation / target_shares

    results: list[Optional[HybridScenarioResult]] = [None] * len(inputs.scenarios)
    fixed_weighted_price = 0.0
    open_index: Optional[int] = None
    for i, (scenario, probability) in enumerate(zip(inputs.scenarios, probabilities)):
        if scenario.total_equity_value is None:
            open_index = i
            continue
        params = _scenario_parameters(inputs.opm_parameters, scenario)
        allocation = allocate_equity_value(scenario.total_equity_value, cap_table, params, breakpoints)
        price = class_price(allocation)
        if price is not None:
            fixed_weighted_price += probability * price
        results[i] = HybridScenarioResult(
            name=scenario.name,
            probability=probability,
            total_equity_value=scenario.total_equity_value,
            parameters=params,
            allocation=allocation,
            target_class_price=price,
        )

    converged = True
    if open_index is not None:
        scenario, probability = inputs.scenarios[open_index], probabilities[open_index]
        if probability <= 0:
            raise PreconditionViolation(f"Scenario '{scenario.name}' is solved for but has zero probability")
        required = (target.price_per_share - fixed_weighted_price) / probability
        if required <= 0:
            raise PreconditionViolation(
                f"Fixed scenarios already contribute ${fixed_weighted_price:,.4f} per share, "
                f"at or above the round price ${target.price_per_share:,.4f}"
            )
        params = _scenario_parameters(inputs.opm_parameters, scenario)
        solved = backsolve_equity_value(cap_table, target.share_class_id, required, params)
        converged = solved.converged
        warnings.extend(f"[{scenario.name}] {w}" for w in solved.warnings)
        results[open_index] = HybridScenarioResult(
            name=scenario.name,
            probability=probability,
            total_equity_value=solved.total_equity_value,
            solved=True,
            parameters=params,
            allocation=solved.allocation,
            target_class_price=solved.achieved_price_per_share,
        )

    weighted_value = sum(r.total_equity_value * r.probability for r in results)
    variance = sum(r.probability * (r.total_equity_value - weighted_value) ** 2 for r in results)

    weighted_price: Optional[float] = None
    if target is not None:
        weighted_price = sum(r.probability * r.target_class_price for r in results)
        if open_index is None and abs(weighted_price - target.price_per_share) > PRICE_TOLERANCE:
            warnings.append(
                f"Weighted price ${weighted_price:,.4f} for '{target.share_class_id}' differs from "
                f"the round price ${target.price_per_share:,.4f}"
            )

    logger.info(
        f"Hybrid valuation over {len(results)} scenarios: weighted equity value {weighted_value:,.0f}"
        + (f", '{target.share_class_id}' at ${weighted_price:,.4f}" if target is not None else "")
    )

    return HybridValuationResult(
        scenarios=tuple(results),
        weighted_equity_value=weighted_value,
        equity_value_std_dev=math.sqrt(variance),
        allocations=_weighted_allocations(results),
        share_class_id=target.share_class_id if target else None,
        target_price_per_share=target.price_per_share if target else None,
        weighted_price_per_share=weighted_price,
        converged=converged,
        warnings=warnings,
    )
