import pytest

from equity_valuation.models.request import DcfAssumptions
from equity_valuation.models.valuations import BacksolveResult
from equity_valuation.pipeline.step_conclude import InsufficientDataError, conclude_equity_value
from equity_valuation.valuation.dcf import compute_dcf_valuation


def _backsolve(value: float, converged: bool = True) -> BacksolveResult:
    return BacksolveResult(
        total_equity_value=value,
        share_class_id="series_b",
        target_price_per_share=4.0,
        achieved_price_per_share=4.0,
        iterations=30,
        converged=converged,
    )


def test_dcf_only(dcf_assumptions):
    dcf = compute_dcf_valuation(dcf_assumptions)
    result = conclude_equity_value(dcf=dcf)
    assert result.equity_value == pytest.approx(dcf.equity_value)
    assert len(result.methodology_weights) == 1
    assert result.methodology_weights[0].weight == pytest.approx(1.0)
    assert result.equity_value_range == pytest.approx([dcf.equity_value * 0.8, dcf.equity_value * 1.2])


def test_all_methods(dcf_assumptions):
    dcf = compute_dcf_valuation(dcf_assumptions)
    result = conclude_equity_value(dcf=dcf, backsolve=_backsolve(90_000_000), provided_value=100_000_000)
    assert len(result.methodology_weights) == 3
    assert sum(w.weight for w in result.methodology_weights) == pytest.approx(1.0)
    low, high = result.equity_value_range
    # Converged backsolve tightens the range
    assert high / result.equity_value == pytest.approx(1.15)
    assert low < result.equity_value < high


def test_unconverged_backsolve_gets_less_weight():
    good = conclude_equity_value(backsolve=_backsolve(90e6), provided_value=100e6)
    weak = conclude_equity_value(backsolve=_backsolve(90e6, converged=False), provided_value=100e6)
    weight = lambda r: next(w.weight for w in r.methodology_weights if w.method == "backsolve")
    assert weight(weak) < weight(good)


def test_defaulted_dcf_weight_reduced():
    dcf = compute_dcf_valuation(DcfAssumptions(forecast_period=3, initial_revenue=10_000_000))
    result = conclude_equity_value(dcf=dcf, provided_value=dcf.equity_value)
    dcf_weight = next(w for w in result.methodology_weights if w.method == "dcf")
    assert dcf_weight.weight == pytest.approx(0.15 / 0.65)
    assert "defaulted" in dcf_weight.rationale


def test_custom_weights():
    result = conclude_equity_value(
        backsolve=_backsolve(80e6), provided_value=120e6,
        custom_weights={"backsolve": 3.0, "provided": 1.0, "dcf": 5.0},
    )
    assert result.equity_value == pytest.approx(0.75 * 80e6 + 0.25 * 120e6)
    assert {w.method for w in result.methodology_weights} == {"backsolve", "provided"}


def test_zero_provided_value_is_usable():
    result = conclude_equity_value(provided_value=0.0)
    assert result.equity_value == 0.0


def test_nothing_available_raises():
    with pytest.raises(InsufficientDataError) as exc:
        conclude_equity_value()
    assert "equity_value" in exc.value.missing_fields
