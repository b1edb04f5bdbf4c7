import logging
import math

logger = logging.getLogger(__name__)

# Abramowitz & Stegun 7.1.26 coefficients for erf(x), |error| < 1.5e-7
_P = 0.3275911
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429

_SEED_VOLATILITY = 0.30
_VEGA_BUMP = 1e-4
_MIN_VEGA = 1e-8
_MIN_VOLATILITY = 0.001
_MAX_VOLATILITY = 5.0


def cumulative_normal(x: float) -> float:
    """Standard normal CDF via the A&S 7.1.26 erf approximation.

    Evaluated on |x| and reflected, so N(-x) == 1 - N(x) holds exactly.
    """
    z = abs(x) / math.sqrt(2.0)
    t = 1.0 / (1.0 + _P * z)
    poly = t * (_A1 + t * (_A2 + t * (_A3 + t * (_A4 + t * _A5))))
    erf = 1.0 - poly * math.exp(-z * z)
    upper = 0.5 * (1.0 + erf)
    return upper if x >= 0 else 1.0 - upper


def _d1_d2(s: float, k: float, t: float, r: float, v: float) -> tuple[float, float]:
    vol_sqrt_t = v * math.sqrt(t)
    d1 = (math.log(s / k) + (r + v * v / 2.0) * t) / vol_sqrt_t
    return d1, d1 - vol_sqrt_t


def call_price(s: float, k: float, t: float, r: float, v: float) -> float:
    """European call value under Black-Scholes.

    Zero volatility or zero term collapses to intrinsic value. A worthless
    underlying is worth nothing, and a zero strike is the underlying itself.
    """
    if v <= 0 or t <= 0:
        return max(0.0, s - k)
    if s <= 0:
        return 0.0
    if k <= 0:
        return s
    d1, d2 = _d1_d2(s, k, t, r, v)
    return s * cumulative_normal(d1) - k * math.exp(-r * t) * cumulative_normal(d2)


def put_price(s: float, k: float, t: float, r: float, v: float) -> float:
    """European put value under Black-Scholes.

    Mirrors call_price. When the underlying is worthless the put is worth the
    strike itself (undiscounted).
    """
    if v <= 0 or t <= 0:
        return max(0.0, k - s)
    if s <= 0:
        return k
    if k <= 0:
        return 0.0
    d1, d2 = _d1_d2(s, k, t, r, v)
    return k * math.exp(-r * t) * cumulative_normal(-d2) - s * cumulative_normal(-d1)


def implied_volatility(
    price: float,
    s: float,
    k: float,
    t: float,
    r: float,
    is_call: bool = True,
    max_iter: int = 100,
    tol: float = 1e-5,
) -> float | None:
    """Solve for the volatility that reproduces `price`, or None if it cannot be found.

    Newton-Raphson from a 30% seed with a forward-difference vega. Gives up
    (returns None) when vega stalls, when an iterate leaves (0.001, 5.0], or
    when `max_iter` iterations pass without reaching `tol`.
    """
    pricer = call_price if is_call else put_price
    sigma = _SEED_VOLATILITY

    for i in range(max_iter):
        model_price = pricer(s, k, t, r, sigma)
        diff = model_price - price
        if abs(diff) < tol:
            logger.debug(f"Implied volatility converged to {sigma:.6f} after {i} iterations")
            return sigma

        vega = (pricer(s, k, t, r, sigma + _VEGA_BUMP) - model_price) / _VEGA_BUMP
        if abs(vega) < _MIN_VEGA:
            logger.warning(f"Implied volatility stalled: vega {vega:.3e} at sigma={sigma:.4f}")
            return None

        next_sigma = sigma - diff / vega
        if not (_MIN_VOLATILITY < next_sigma <= _MAX_VOLATILITY):
            logger.warning(
                f"Implied volatility diverged: next iterate {next_sigma:.4f} outside "
                f"({_MIN_VOLATILITY}, {_MAX_VOLATILITY}]"
            )
            return None
        sigma = next_sigma

    logger.warning(f"Implied volatility did not converge within {max_iter} iterations")
    return None
