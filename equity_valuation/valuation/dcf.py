import logging

from equity_valuation.models.request import DcfAssumptions, StubPeriod
from equity_valuation.models.valuations import (
    DCFResult, DcfProjection, SensitivityCell, StubPeriodResult, TerminalAssumptions,
)
from equity_valuation.valuation.errors import DivisionDegenerate

logger = logging.getLogger(__name__)

# Per-field fill values for short or missing assumption arrays
DEFAULT_GROWTH_RATE = 0.05
DEFAULT_EBITDA_MARGIN = 0.20
DEFAULT_DEPRECIATION_RATE = 0.03
DEFAULT_CAPEX_PERCENT = 0.05
DEFAULT_NWC_PERCENT = 0.02

WACC_DELTAS = [-0.02, -0.01, 0.0, 0.01, 0.02]
TGR_DELTAS = [-0.01, -0.005, 0.0, 0.005, 0.01]


def _fill(name: str, values: list[float], n_years: int, default: float, defaulted: list[str]) -> list[float]:
    """Truncate or pad an assumption array to the forecast length."""
    if len(values) >= n_years:
        return list(values[:n_years])
    defaulted.append(f"{name}: {n_years - len(values)} of {n_years} years defaulted to {default:.2%}")
    return list(values) + [default] * (n_years - len(values))


def _check_spread(wacc: float, tgr: float) -> None:
    if wacc <= -1.0:
        raise DivisionDegenerate(f"WACC ({wacc}) must be greater than -100%", wacc, tgr)
    if wacc <= tgr:
        raise DivisionDegenerate(
            f"WACC ({wacc}) must be greater than terminal growth rate ({tgr})", wacc, tgr
        )


def _discount_factors(wacc: float, n_years: int) -> list[float]:
    return [1 / (1 + wacc) ** (i + 1) for i in range(n_years)]


def _terminal_value(
    final_revenue: float,
    final_ebitda: float,
    wacc: float,
    tgr: float,
    assumptions: DcfAssumptions,
) -> float:
    if assumptions.exit_multiple:
        return final_ebitda * assumptions.exit_multiple
    terminal_revenue = final_revenue * (1 + tgr)
    terminal_nopat = terminal_revenue * assumptions.terminal_nopat_margin
    terminal_fcf = terminal_nopat * (1 - assumptions.terminal_reinvestment_rate)
    return terminal_fcf / (wacc - tgr)


def _stub_fcf(stub: StubPeriod | None) -> float:
    if stub is None or stub.fraction <= 0:
        return 0.0
    i = stub.inputs
    return i.ebit - i.taxes + i.depreciation - i.capex - i.nwc_change


def _compute_ev(
    fcfs: list[float],
    final_revenue: float,
    final_ebitda: float,
    stub_fcf: float,
    wacc: float,
    tgr: float,
    assumptions: DcfAssumptions,
) -> float:
    """Discount a fixed FCF array at (wacc, tgr). Returns enterprise value."""
    factors = _discount_factors(wacc, len(fcfs))
    pv_fcfs = sum(fcf * df for fcf, df in zip(fcfs, factors))
    terminal_value = _terminal_value(final_revenue, final_ebitda, wacc, tgr, assumptions)
    pv_stub = 0.0
    if assumptions.stub_period is not None and assumptions.stub_period.fraction > 0:
        pv_stub = stub_fcf / (1 + wacc) ** assumptions.stub_period.fraction
    return pv_stub + pv_fcfs + terminal_value * factors[-1]


def _compute_sensitivity_table(
    fcfs: list[float],
    final_revenue: float,
    final_ebitda: float,
    stub_fcf: float,
    assumptions: DcfAssumptions,
) -> list[SensitivityCell]:
    """5x5 grid: WACC +/-2% x TGR +/-1%, reusing the projected FCFs."""
    base_wacc = assumptions.wacc
    base_tgr = assumptions.terminal_growth_rate

    cells: list[SensitivityCell] = []
    # Rounded so that grid points landing on wacc == tgr compare equal
    for w in [round(base_wacc + d, 10) for d in WACC_DELTAS]:
        for t in [round(base_tgr + d, 10) for d in TGR_DELTAS]:
            if w <= -1.0:
                cells.append(SensitivityCell(
                    wacc=round(w, 4), terminal_growth_rate=round(t, 4),
                    note="WACC at or below -100%",
                ))
                continue
            if not assumptions.exit_multiple and w <= t:
                cells.append(SensitivityCell(
                    wacc=round(w, 4), terminal_growth_rate=round(t, 4),
                    note="WACC <= terminal growth rate",
                ))
                continue
            ev = _compute_ev(fcfs, final_revenue, final_ebitda, stub_fcf, w, t, assumptions)
            cells.append(SensitivityCell(
                wacc=round(w, 4),
                terminal_growth_rate=round(t, 4),
                enterprise_value=ev,
            ))
    return cells


def compute_dcf_valuation(assumptions: DcfAssumptions) -> DCFResult:
    """Project free cash flows and compute enterprise value by discounted cash flow.

    Raises DivisionDegenerate when perpetuity growth is used with
    WACC <= terminal growth rate.
    """
    wacc = assumptions.wacc
    tgr = assumptions.terminal_growth_rate
    n_years = assumptions.forecast_period
    warnings: list[str] = []
    defaulted: list[str] = []

    if assumptions.exit_multiple:
        if wacc <= -1.0:
            raise DivisionDegenerate(f"WACC ({wacc}) must be greater than -100%", wacc, tgr)
        if wacc <= tgr:
            warnings.append(
                f"WACC ({wacc}) <= terminal growth rate ({tgr}); ignored because an exit multiple is used"
            )
    else:
        _check_spread(wacc, tgr)

    growth = _fill("revenue_growth_rates", assumptions.revenue_growth_rates, n_years, DEFAULT_GROWTH_RATE, defaulted)
    margins = _fill("ebitda_margins", assumptions.ebitda_margins, n_years, DEFAULT_EBITDA_MARGIN, defaulted)
    nwc_pcts = _fill("nwc_percentages", assumptions.nwc_percentages, n_years, DEFAULT_NWC_PERCENT, defaulted)

    revenue: list[float] = []
    rev = assumptions.initial_revenue
    for g in growth:
        rev = rev * (1 + g)
        revenue.append(rev)

    ebitda = [r * m for r, m in zip(revenue, margins)]

    has_custom_schedule = False
    schedule = assumptions.depreciation_schedule
    if schedule is not None and len(schedule) >= n_years:
        depreciation = list(schedule[:n_years])
        has_custom_schedule = True
    else:
        if schedule is not None:
            warnings.append(
                f"Depreciation schedule has {len(schedule)} of {n_years} years; using depreciation rates"
            )
        dep_rates = _fill("depreciation_rates", assumptions.depreciation_rates, n_years, DEFAULT_DEPRECIATION_RATE, defaulted)
        depreciation = [r * d for r, d in zip(revenue, dep_rates)]

    schedule = assumptions.capex_schedule
    if schedule is not None and len(schedule) >= n_years:
        capex = list(schedule[:n_years])
        has_custom_schedule = True
    else:
        if schedule is not None:
            warnings.append(
                f"CapEx schedule has {len(schedule)} of {n_years} years; using capex percentages"
            )
        capex_pcts = _fill("capex_percentages", assumptions.capex_percentages, n_years, DEFAULT_CAPEX_PERCENT, defaulted)
        capex = [r * c for r, c in zip(revenue, capex_pcts)]

    ebit = [e - d for e, d in zip(ebitda, depreciation)]
    # Taxable base is EBITDA less depreciation, no loss floor
    taxes = [(e - d) * assumptions.tax_rate for e, d in zip(ebitda, depreciation)]
    nwc_changes = [r * p for r, p in zip(revenue, nwc_pcts)]
    fcfs = [e - t - c - n for e, t, c, n in zip(ebitda, taxes, capex, nwc_changes)]

    factors = _discount_factors(wacc, n_years)
    discounted = [f * df for f, df in zip(fcfs, factors)]

    terminal_value = _terminal_value(revenue[-1], ebitda[-1], wacc, tgr, assumptions)
    discounted_tv = terminal_value * factors[-1]

    stub_result = None
    stub_fcf = _stub_fcf(assumptions.stub_period)
    pv_stub = 0.0
    if assumptions.stub_period is not None and assumptions.stub_period.fraction > 0:
        pv_stub = stub_fcf / (1 + wacc) ** assumptions.stub_period.fraction
        stub_result = StubPeriodResult(
            fraction=assumptions.stub_period.fraction,
            fcf=stub_fcf,
            discounted_fcf=pv_stub,
        )

    enterprise_value = pv_stub + sum(discounted) + discounted_tv

    for note in defaulted:
        logger.info(f"DCF input defaulted: {note}")
    warnings.extend(f"Defaulted {note}" for note in defaulted)

    terminal_assumptions = None
    if not assumptions.exit_multiple:
        reinvestment = assumptions.terminal_reinvestment_rate
        terminal_assumptions = TerminalAssumptions(
            nopat_margin=assumptions.terminal_nopat_margin,
            reinvestment_rate=reinvestment,
            implied_roic=tgr / reinvestment if reinvestment > 0 else None,
        )

    if assumptions.first_forecast_year is not None:
        years = [str(assumptions.first_forecast_year + i) for i in range(n_years)]
    else:
        years = [f"Year {i + 1}" for i in range(n_years)]

    sensitivity_table = _compute_sensitivity_table(fcfs, revenue[-1], ebitda[-1], stub_fcf, assumptions)

    logger.info(
        f"DCF complete: EV={enterprise_value:,.0f} over {n_years} years "
        f"(TV {'exit multiple' if assumptions.exit_multiple else 'perpetuity growth'})"
    )

    return DCFResult(
        enterprise_value=enterprise_value,
        equity_value=enterprise_value,
        projections=DcfProjection(
            years=years,
            revenue=revenue,
            ebitda=ebitda,
            depreciation=depreciation,
            ebit=ebit,
            taxes=taxes,
            capex=capex,
            nwc_changes=nwc_changes,
            fcf=fcfs,
            discount_factors=factors,
            discounted_fcf=discounted,
        ),
        terminal_method="exit_multiple" if assumptions.exit_multiple else "perpetuity_growth",
        terminal_value=terminal_value,
        discounted_terminal_value=discounted_tv,
        discount_rate=wacc,
        terminal_growth_rate=tgr,
        implied_ev_to_ebitda=enterprise_value / ebitda[0] if ebitda[0] else None,
        terminal_assumptions=terminal_assumptions,
        stub_period=stub_result,
        has_custom_depreciation_schedule=has_custom_schedule,
        sensitivity_table=sensitivity_table,
        defaulted_inputs=defaulted,
        warnings=warnings,
    )
