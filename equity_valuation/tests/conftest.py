import pytest

from equity_valuation.models.cap_table import CapTable, OptionTranche, ShareClass
from equity_valuation.models.request import DcfAssumptions, OpmParameters


@pytest.fixture
def simple_cap_table():
    """1M common plus a 500k-share Series A at $2, 1x non-participating."""
    return CapTable(share_classes=[
        ShareClass(id="common", name="Common", share_type="common", shares_outstanding=1_000_000),
        ShareClass(
            id="series_a", name="Series A", share_type="preferred",
            shares_outstanding=500_000, price_per_share=2.0,
            preference_type="non-participating", lp_multiple=1.0, seniority=0,
        ),
    ])


@pytest.fixture
def complex_cap_table():
    return CapTable(
        share_classes=[
            ShareClass(id="common", name="Common", share_type="common", shares_outstanding=4_000_000),
            ShareClass(
                id="series_a", name="Series A", share_type="preferred",
                shares_outstanding=1_000_000, price_per_share=1.0,
                preference_type="participating-with-cap", participation_cap=3.0, seniority=1,
            ),
            ShareClass(
                id="series_b", name="Series B", share_type="preferred",
                shares_outstanding=1_500_000, price_per_share=4.0,
                preference_type="non-participating", lp_multiple=1.5, seniority=0,
                dividends_declared=True, dividends_rate=8.0,
            ),
            ShareClass(
                id="series_c", name="Series C", share_type="preferred",
                shares_outstanding=500_000, price_per_share=8.0,
                preference_type="participating", seniority=0, conversion_ratio=1.2,
            ),
        ],
        options=[
            OptionTranche(id="pool_1", num_options=600_000, exercise_price=0.5),
            OptionTranche(id="warrants", num_options=200_000, exercise_price=3.0, type="Warrants"),
        ],
    )


@pytest.fixture
def exit_parameters():
    """Zero time to liquidity: the OPM collapses to the deterministic exit waterfall."""
    return OpmParameters(time_to_liquidity=0.0, risk_free_rate=0.045, volatility=0.60)


@pytest.fixture
def dcf_assumptions():
    return DcfAssumptions(
        forecast_period=5,
        initial_revenue=50_000_000,
        revenue_growth_rates=[0.30, 0.25, 0.20, 0.15, 0.10],
        ebitda_margins=[0.15, 0.18, 0.20, 0.22, 0.24],
        depreciation_rates=[0.03] * 5,
        capex_percentages=[0.05] * 5,
        nwc_percentages=[0.02] * 5,
        tax_rate=0.25,
        wacc=0.14,
        terminal_growth_rate=0.03,
    )
