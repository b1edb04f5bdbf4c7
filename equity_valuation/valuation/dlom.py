"""Discount for lack of marketability (DLOM) from option-based models.

All model outputs are whole percentages clipped to [0, 100]. A zero holding
period or zero volatility yields no discount.
"""
import logging
import math
from typing import Optional

from equity_valuation.models.request import DlomInputs
from equity_valuation.models.valuations import DlomResult
from equity_valuation.valuation.option_pricing import cumulative_normal, implied_volatility, put_price

logger = logging.getLogger(__name__)


def _clip(pct: float) -> float:
    return max(0.0, min(100.0, pct))


def _average_strike_put(sigma_sqrt_t: float, t: float, q: float) -> float:
    return math.exp(-q * t) * (2.0 * cumulative_normal(sigma_sqrt_t / 2.0) - 1.0)


def chaffee_dlom(t: float, volatility: float, risk_free_rate: float, dividend_yield: float = 0.0) -> float:
    """At-the-money European protective put as a fraction of the spot price."""
    if t <= 0 or volatility <= 0:
        return 0.0
    spot = math.exp(-dividend_yield * t)
    return _clip(put_price(spot, 1.0, t, risk_free_rate, volatility) * 100.0)


def finnerty_dlom(t: float, volatility: float, dividend_yield: float = 0.0) -> float:
    """Finnerty (2012) average-strike put."""
    if t <= 0 or volatility <= 0:
        return 0.0
    var_t = volatility ** 2 * t
    adjusted = var_t + math.log(2.0 * (math.exp(var_t) - var_t - 1.0)) - 2.0 * math.log(math.exp(var_t) - 1.0)
    return _clip(_average_strike_put(math.sqrt(max(adjusted, 0.0)), t, dividend_yield) * 100.0)


def ghaidarov_dlom(t: float, volatility: float, dividend_yield: float = 0.0) -> float:
    """Ghaidarov (2009) average-strike put on the arithmetic-average forward."""
    if t <= 0 or volatility <= 0:
        return 0.0
    var_t = volatility ** 2 * t
    adjusted = math.log(2.0 * (math.exp(var_t) - var_t - 1.0)) - 2.0 * math.log(var_t)
    return _clip(_average_strike_put(math.sqrt(max(adjusted, 0.0)), t, dividend_yield) * 100.0)


def longstaff_dlom(t: float, volatility: float) -> float:
    """Longstaff (1995) lookback put; an upper bound on the discount."""
    if t <= 0 or volatility <= 0:
        return 0.0
    var_t = volatility ** 2 * t
    value = (
        (2.0 + var_t / 2.0) * cumulative_normal(math.sqrt(var_t) / 2.0)
        + math.sqrt(var_t / (2.0 * math.pi)) * math.exp(-var_t / 8.0)
        - 1.0
    )
    return _clip(value * 100.0)


def compute_dlom(inputs: DlomInputs) -> DlomResult:
    """Compute each DLOM model and their weighted conclusion."""
    t, v, r, q = inputs.time_to_liquidity, inputs.volatility, inputs.risk_free_rate, inputs.dividend_yield
    results = {
        "chaffee": chaffee_dlom(t, v, r, q),
        "finnerty": finnerty_dlom(t, v, q),
        "ghaidarov": ghaidarov_dlom(t, v, q),
        "longstaff": longstaff_dlom(t, v),
    }
    weights = inputs.weights.model_dump()
    warnings: list[str] = []

    total_weight = sum(weights.values())
    if total_weight > 0:
        concluded = sum(results[model] * weights[model] for model in results) / total_weight
    else:
        concluded = 0.0
        warnings.append("All DLOM model weights are zero; concluded DLOM set to 0%")
        logger.warning("DLOM weights sum to zero")

    if t <= 0 or v <= 0:
        warnings.append("Zero holding period or volatility; no marketability discount applied")

    logger.info(
        f"DLOM: chaffee={results['chaffee']:.2f}% finnerty={results['finnerty']:.2f}% "
        f"ghaidarov={results['ghaidarov']:.2f}% longstaff={results['longstaff']:.2f}% "
        f"-> {concluded:.2f}%"
    )

    return DlomResult(
        **results,
        weights=inputs.weights,
        concluded_dlom=concluded,
        warnings=warnings,
    )


def implied_volatility_from_put(dlom_percentage: float, t: float, risk_free_rate: float) -> Optional[float]:
    """Back out the volatility implied by an observed at-the-money protective-put DLOM."""
    if t <= 0 or not 0.0 < dlom_percentage < 100.0:
        logger.warning(f"Cannot imply volatility from DLOM {dlom_percentage}% over {t} years")
        return None
    return implied_volatility(dlom_percentage / 100.0, 1.0, 1.0, t, risk_free_rate, is_call=False)
