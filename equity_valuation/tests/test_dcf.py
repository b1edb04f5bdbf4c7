import pytest

from equity_valuation.models.request import DcfAssumptions, StubPeriod, StubPeriodInputs
from equity_valuation.valuation.dcf import compute_dcf_valuation
from equity_valuation.valuation.errors import DivisionDegenerate, PreconditionViolation


def _one_year(**overrides) -> DcfAssumptions:
    params = dict(
        forecast_period=1,
        initial_revenue=100.0,
        revenue_growth_rates=[0.10],
        ebitda_margins=[0.20],
        depreciation_rates=[0.05],
        capex_percentages=[0.05],
        nwc_percentages=[0.0],
        tax_rate=0.25,
        wacc=0.10,
        terminal_growth_rate=0.02,
    )
    params.update(overrides)
    return DcfAssumptions(**params)


def test_basic_dcf(dcf_assumptions):
    result = compute_dcf_valuation(dcf_assumptions)
    assert result.enterprise_value > 0
    assert result.equity_value == result.enterprise_value
    assert len(result.projected_fcfs) == 5
    assert result.terminal_value > 0
    assert result.terminal_method == "perpetuity_growth"
    assert not result.defaulted_inputs
    assert not result.warnings


def test_hand_computed_single_year():
    result = compute_dcf_valuation(_one_year())
    p = result.projections
    assert p.revenue == [pytest.approx(110.0)]
    assert p.ebitda == [pytest.approx(22.0)]
    # Taxable base is EBITDA less depreciation
    assert p.taxes == [pytest.approx((22.0 - 5.5) * 0.25)]
    assert p.fcf == [pytest.approx(12.375)]
    # 110 * 1.02 * 0.15 * (1 - 0.40) / (0.10 - 0.02)
    assert result.terminal_value == pytest.approx(126.225)
    assert result.enterprise_value == pytest.approx(126.0)


def test_wacc_equal_tgr_raises():
    with pytest.raises(PreconditionViolation):
        compute_dcf_valuation(_one_year(wacc=0.03, terminal_growth_rate=0.03))


def test_wacc_below_tgr_raises_division_degenerate():
    with pytest.raises(DivisionDegenerate) as exc:
        compute_dcf_valuation(_one_year(wacc=0.02, terminal_growth_rate=0.03))
    assert exc.value.wacc == 0.02
    assert exc.value.growth_rate == 0.03


def test_exit_multiple_ignores_spread():
    result = compute_dcf_valuation(_one_year(wacc=0.02, terminal_growth_rate=0.03, exit_multiple=8.0))
    assert result.terminal_method == "exit_multiple"
    assert result.terminal_value == pytest.approx(22.0 * 8.0)
    assert result.terminal_assumptions is None
    assert any("exit multiple" in w for w in result.warnings)


def test_growth_rate_monotonicity(dcf_assumptions):
    base = compute_dcf_valuation(dcf_assumptions).enterprise_value
    for i in range(dcf_assumptions.forecast_period):
        rates = list(dcf_assumptions.revenue_growth_rates)
        rates[i] += 0.05
        bumped = dcf_assumptions.model_copy(update={"revenue_growth_rates": rates})
        assert compute_dcf_valuation(bumped).enterprise_value >= base


def test_short_arrays_are_defaulted():
    result = compute_dcf_valuation(DcfAssumptions(
        forecast_period=3,
        initial_revenue=1_000.0,
        revenue_growth_rates=[0.10],
    ))
    assert len(result.defaulted_inputs) == 5
    assert any(d.startswith("revenue_growth_rates") for d in result.defaulted_inputs)
    assert result.projections.revenue == pytest.approx([1100.0, 1155.0, 1212.75])
    assert result.projections.ebitda[2] == pytest.approx(1212.75 * 0.20)
    assert any("Defaulted" in w for w in result.warnings)


def test_stub_period_discounting():
    stub = StubPeriod(
        fraction=0.5,
        inputs=StubPeriodInputs(ebit=10.0, taxes=2.0, depreciation=1.0, capex=3.0, nwc_change=1.0),
    )
    without = compute_dcf_valuation(_one_year())
    with_stub = compute_dcf_valuation(_one_year(stub_period=stub))
    expected_pv = 5.0 / 1.10 ** 0.5
    assert with_stub.stub_period.fcf == pytest.approx(5.0)
    assert with_stub.stub_period.discounted_fcf == pytest.approx(expected_pv)
    assert with_stub.enterprise_value - without.enterprise_value == pytest.approx(expected_pv)


def test_zero_fraction_stub_is_ignored():
    stub = StubPeriod(fraction=0.0, inputs=StubPeriodInputs(ebit=10.0))
    result = compute_dcf_valuation(_one_year(stub_period=stub))
    assert result.stub_period is None
    assert result.enterprise_value == pytest.approx(126.0)


def test_sensitivity_grid(dcf_assumptions):
    result = compute_dcf_valuation(dcf_assumptions)
    assert len(result.sensitivity_table) == 25
    center = result.sensitivity_table[12]
    assert center.wacc == pytest.approx(dcf_assumptions.wacc)
    assert center.terminal_growth_rate == pytest.approx(dcf_assumptions.terminal_growth_rate)
    assert center.enterprise_value == pytest.approx(result.enterprise_value)
    # Higher WACC at the same growth rate lowers value
    assert result.sensitivity_table[22].enterprise_value < result.sensitivity_table[2].enterprise_value


def test_sensitivity_grid_reports_invalid_cells():
    result = compute_dcf_valuation(_one_year(wacc=0.05, terminal_growth_rate=0.04))
    invalid = [c for c in result.sensitivity_table if c.enterprise_value is None]
    assert invalid
    assert all(c.note for c in invalid)
    assert all(c.wacc <= c.terminal_growth_rate for c in invalid)


def test_external_schedules():
    result = compute_dcf_valuation(_one_year(depreciation_schedule=[7.0], capex_schedule=[4.0]))
    assert result.has_custom_depreciation_schedule
    assert result.projections.depreciation == [7.0]
    assert result.projections.capex == [4.0]


def test_short_schedule_falls_back_to_rates():
    result = compute_dcf_valuation(_one_year(forecast_period=1, depreciation_schedule=[]))
    assert not result.has_custom_depreciation_schedule
    assert result.projections.depreciation == [pytest.approx(5.5)]
    assert any("Depreciation schedule" in w for w in result.warnings)


def test_year_labels():
    assert compute_dcf_valuation(_one_year()).projections.years == ["Year 1"]
    labelled = compute_dcf_valuation(_one_year(first_forecast_year=2025))
    assert labelled.projections.years == ["2025"]


def test_implied_metrics():
    result = compute_dcf_valuation(_one_year())
    assert result.implied_ev_to_ebitda == pytest.approx(126.0 / 22.0)
    assert result.terminal_assumptions.implied_roic == pytest.approx(0.02 / 0.40)
