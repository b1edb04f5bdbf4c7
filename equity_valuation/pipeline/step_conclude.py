import logging

from equity_valuation.models.valuations import (
    BacksolveResult, ConcludedEquityValue, DCFResult, MethodologyWeight,
)

logger = logging.getLogger(__name__)


class InsufficientDataError(Exception):
    """Raised when the pipeline cannot conclude an equity value due to missing data."""
    def __init__(self, message: str, missing_fields: list[str]):
        self.missing_fields = missing_fields
        super().__init__(message)


def conclude_equity_value(
    dcf: DCFResult | None = None,
    backsolve: BacksolveResult | None = None,
    provided_value: float | None = None,
    custom_weights: dict[str, float] | None = None,
) -> ConcludedEquityValue:
    """Weight the available methodologies into a single concluded equity value."""
    results: dict[str, float] = {}

    if dcf and dcf.equity_value > 0:
        results["dcf"] = dcf.equity_value

    if backsolve and backsolve.total_equity_value > 0:
        results["backsolve"] = backsolve.total_equity_value

    if provided_value is not None and provided_value >= 0:
        results["provided"] = provided_value

    if not results:
        missing = []
        if dcf is None:
            missing.append("dcf_assumptions")
        elif dcf.equity_value <= 0:
            missing.append("positive DCF equity value")
        if backsolve is None:
            missing.append("backsolve")
        missing.append("equity_value")
        raise InsufficientDataError(
            "No methodology produced a usable equity value", missing_fields=missing
        )

    if custom_weights:
        weights = {k: v for k, v in custom_weights.items() if k in results and v > 0}
        rationales = {k: f"Custom weight {v:.2f}" for k, v in weights.items()}
        if not weights:
            logger.warning(f"Custom weights {custom_weights} match no available method; using defaults")
            weights, rationales = _default_weights(dcf, backsolve, results)
    else:
        weights, rationales = _default_weights(dcf, backsolve, results)

    # Normalize weights to sum to 1.0
    total_weight = sum(weights.values())
    weights = {k: v / total_weight for k, v in weights.items()}

    equity_value = sum(results[method] * weights[method] for method in weights)

    # +/- 20% by default, tightened when a converged backsolve anchors the value to a priced round
    range_pct = 0.20
    if "backsolve" in weights and backsolve and backsolve.converged:
        range_pct = 0.15
    equity_value_range = [equity_value * (1 - range_pct), equity_value * (1 + range_pct)]

    methodology_weights = [
        MethodologyWeight(
            method=method,
            weight=weights[method],
            value=results[method],
            rationale=rationales.get(method, ""),
        )
        for method in weights
    ]

    logger.info(
        f"Concluded equity value {equity_value:,.0f} from "
        + ", ".join(f"{m}={w:.2f}" for m, w in weights.items())
    )

    return ConcludedEquityValue(
        equity_value=equity_value,
        equity_value_range=equity_value_range,
        methodology_weights=methodology_weights,
        dcf_result=dcf,
        backsolve_result=backsolve,
    )


def _default_weights(
    dcf: DCFResult | None,
    backsolve: BacksolveResult | None,
    results: dict,
) -> tuple[dict[str, float], dict[str, str]]:
    """Heuristic-based default weights with descriptive rationales."""
    weights: dict[str, float] = {}
    rationales: dict[str, str] = {}

    if "provided" in results:
        weights["provided"] = 0.50
        rationales["provided"] = "Weight 0.50: externally concluded equity value supplied by the caller"

    if "backsolve" in results:
        if backsolve and backsolve.converged:
            weights["backsolve"] = 0.50
            rationales["backsolve"] = (
                f"Weight 0.50: OPM backsolve to the {backsolve.share_class_id} round price, "
                f"calibrated market evidence"
            )
        else:
            weights["backsolve"] = 0.20
            rationales["backsolve"] = "Weight 0.20: backsolve did not converge, reduced weight"

    if "dcf" in results:
        n_years = len(dcf.projected_fcfs) if dcf else 0
        if dcf and dcf.defaulted_inputs:
            weights["dcf"] = 0.15
            rationales["dcf"] = (
                f"Weight 0.15: DCF with {n_years}-year projections, "
                f"{len(dcf.defaulted_inputs)} defaulted input(s), significantly reduced weight"
            )
        else:
            weights["dcf"] = 0.35
            rationales["dcf"] = (
                f"Weight 0.35: DCF with {n_years}-year projections, intrinsic value anchor"
            )

    return weights, rationales
