import logging
import statistics
from typing import Optional, Sequence

from equity_valuation.models.request import PeerCompany, WaccInputs
from equity_valuation.models.valuations import CapitalStructurePoint, OptimalCapitalStructure, WaccResult
from equity_valuation.valuation.errors import PreconditionViolation

logger = logging.getLogger(__name__)

DEFAULT_ASSET_BETA = 1.0
DEFAULT_DEBT_RATIOS = (0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7)


def unlever_beta(levered_beta: float, debt_to_equity: float, tax_rate: float) -> float:
    """Hamada: beta_U = beta_L / (1 + (1 - t) * D/E)."""
    return levered_beta / (1.0 + (1.0 - tax_rate) * debt_to_equity)


def relever_beta(unlevered_beta: float, debt_to_equity: float, tax_rate: float) -> float:
    return unlevered_beta * (1.0 + (1.0 - tax_rate) * debt_to_equity)


def median_unlevered_beta(peers: Sequence[PeerCompany]) -> Optional[float]:
    if not peers:
        return None
    return statistics.median(unlever_beta(p.levered_beta, p.debt_to_equity, p.tax_rate) for p in peers)


def compute_wacc(inputs: WaccInputs) -> WaccResult:
    """Build up WACC from a peer asset beta, CAPM with premiums, and after-tax debt.

    The peer median asset beta is relevered at the target D/E, which defaults to
    debt_weight / equity_weight.
    """
    warnings: list[str] = []
    equity_weight = 1.0 - inputs.debt_weight
    target_de = inputs.target_debt_to_equity
    if target_de is None:
        target_de = inputs.debt_weight / equity_weight

    unlevered = median_unlevered_beta(inputs.peer_companies)
    if unlevered is None:
        unlevered = DEFAULT_ASSET_BETA
        warnings.append(f"No peer companies provided; asset beta defaulted to {DEFAULT_ASSET_BETA:.2f}")
        logger.warning("WACC build-up without peers, using the market beta")

    relevered = relever_beta(unlevered, target_de, inputs.target_tax_rate)
    cost_of_equity = (
        inputs.risk_free_rate
        + relevered * inputs.equity_risk_premium
        + inputs.size_premium
        + inputs.country_risk_premium
        + inputs.company_specific_premium
    )
    after_tax_debt = inputs.pre_tax_cost_of_debt * (1.0 - inputs.debt_tax_rate)
    wacc = cost_of_equity * equity_weight + after_tax_debt * inputs.debt_weight
    if wacc <= 0:
        raise PreconditionViolation(f"WACC build-up produced a non-positive rate ({wacc:.4f})")

    logger.info(
        f"WACC: beta_U={unlevered:.3f} beta_L={relevered:.3f} Ke={cost_of_equity:.2%} "
        f"Kd={after_tax_debt:.2%} D/V={inputs.debt_weight:.0%} -> {wacc:.2%}"
    )

    return WaccResult(
        unlevered_beta=unlevered,
        relevered_beta=relevered,
        cost_of_equity=cost_of_equity,
        after_tax_cost_of_debt=after_tax_debt,
        debt_weight=inputs.debt_weight,
        equity_weight=equity_weight,
        wacc=wacc,
        beta_adjusted_premium=relevered * inputs.equity_risk_premium,
        total_equity_premium=cost_of_equity - inputs.risk_free_rate,
        warnings=warnings,
    )


def find_optimal_capital_structure(
    inputs: WaccInputs,
    debt_ratios: Sequence[float] = DEFAULT_DEBT_RATIOS,
) -> OptimalCapitalStructure:
    """Recompute WACC across debt ratios, relevering the beta at each, and pick the minimum."""
    if not debt_ratios:
        raise PreconditionViolation("At least one debt ratio is required")
    bad = [d for d in debt_ratios if not 0.0 <= d < 1.0]
    if bad:
        raise PreconditionViolation(f"Debt ratios must lie in [0, 1), got {bad}")

    points: list[CapitalStructurePoint] = []
    for debt_ratio in debt_ratios:
        result = compute_wacc(inputs.model_copy(update={
            "debt_weight": debt_ratio,
            "target_debt_to_equity": debt_ratio / (1.0 - debt_ratio),
        }))
        points.append(CapitalStructurePoint(
            debt_ratio=debt_ratio,
            wacc=result.wacc,
            cost_of_equity=result.cost_of_equity,
            after_tax_cost_of_debt=result.after_tax_cost_of_debt,
        ))

    optimal = min(points, key=lambda p: p.wacc)
    logger.info(f"Optimal capital structure: {optimal.debt_ratio:.0%} debt at WACC {optimal.wacc:.2%}")
    return OptimalCapitalStructure(points=tuple(points), optimal=optimal)
