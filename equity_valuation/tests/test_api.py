import json
import time

import pytest
from fastapi.testclient import TestClient

from equity_valuation.api.dependencies import get_status_registry
from equity_valuation.main import app
from equity_valuation.services.pipeline_status import StatusRegistry

SIMPLE_CAP_TABLE = {
    "share_classes": [
        {"id": "common", "name": "Common", "share_type": "common", "shares_outstanding": 1_000_000},
        {
            "id": "series_a", "name": "Series A", "share_type": "preferred",
            "shares_outstanding": 500_000, "price_per_share": 2.0,
        },
    ],
}

DCF_BODY = {
    "forecast_period": 3,
    "initial_revenue": 10_000_000,
    "revenue_growth_rates": [0.2, 0.15, 0.1],
    "ebitda_margins": [0.2, 0.22, 0.25],
    "wacc": 0.12,
    "terminal_growth_rate": 0.03,
}


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def test_root(client):
    assert client.get("/").json()["message"] == "Equity Valuation Engine API"


def test_dcf(client):
    resp = client.post("/api/valuations/dcf", json=DCF_BODY)
    assert resp.status_code == 200
    body = resp.json()
    assert body["enterprise_value"] > 0
    assert len(body["sensitivity_table"]) == 25


def test_dcf_precondition_is_422(client):
    resp = client.post("/api/valuations/dcf", json={**DCF_BODY, "wacc": 0.03})
    assert resp.status_code == 422
    assert "WACC" in resp.json()["detail"]


def test_breakpoints(client):
    resp = client.post("/api/valuations/breakpoints", json=SIMPLE_CAP_TABLE)
    assert resp.status_code == 200
    body = resp.json()
    assert len(body) == 3
    assert body[-1]["to_value"] is None


def test_breakpoints_inconsistent_cap_table(client):
    resp = client.post("/api/valuations/breakpoints", json={"share_classes": [], "options": []})
    assert resp.status_code == 422


def test_allocation_at_exit_with_dlom(client):
    resp = client.post("/api/valuations/allocation", json={
        "total_equity_value": 3_000_000,
        "cap_table": SIMPLE_CAP_TABLE,
        "opm_parameters": {"time_to_liquidity": 0.0},
        "dlom_percentage": 20.0,
    })
    assert resp.status_code == 200
    allocations = {a["security_id"]: a for a in resp.json()["allocations"]}
    assert allocations["common"]["dollar_allocation"] == pytest.approx(2_000_000)
    assert allocations["common"]["non_marketable_per_share_value"] == pytest.approx(1.6)


def test_dlom(client):
    resp = client.post("/api/valuations/dlom", json={"time_to_liquidity": 2.0, "volatility": 0.4})
    assert resp.status_code == 200
    assert 0 < resp.json()["concluded_dlom"] < 100


def test_wacc(client):
    resp = client.post("/api/valuations/wacc", json={
        "peer_companies": [{"name": "Peer", "levered_beta": 1.1}],
        "risk_free_rate": 0.04, "equity_risk_premium": 0.05,
    })
    assert resp.status_code == 200
    assert resp.json()["wacc"] == pytest.approx(0.095)


def test_wacc_optimal_structure(client):
    resp = client.post("/api/valuations/wacc/optimal-structure", json={"debt_ratios": [0.0, 0.3, 0.6]})
    assert resp.status_code == 200
    body = resp.json()
    assert [p["debt_ratio"] for p in body["points"]] == [0.0, 0.3, 0.6]
    assert body["optimal"]["wacc"] == min(p["wacc"] for p in body["points"])


def test_wacc_optimal_structure_bad_ratio(client):
    resp = client.post("/api/valuations/wacc/optimal-structure", json={"debt_ratios": [1.5]})
    assert resp.status_code == 422


def test_hybrid(client):
    resp = client.post("/api/valuations/hybrid", json={
        "cap_table": SIMPLE_CAP_TABLE,
        "opm_parameters": {"time_to_liquidity": 0.0},
        "target": {"share_class_id": "series_a", "price_per_share": 5.0},
        "scenarios": [
            {"name": "Sale", "probability": 50, "total_equity_value": 6_000_000},
            {"name": "IPO", "probability": 50},
        ],
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["weighted_price_per_share"] == pytest.approx(5.0, abs=1e-3)
    assert body["scenarios"][1]["solved"]


def test_hybrid_probabilities_far_from_100(client):
    resp = client.post("/api/valuations/hybrid", json={
        "cap_table": SIMPLE_CAP_TABLE,
        "scenarios": [{"name": "Sale", "probability": 50, "total_equity_value": 6_000_000}],
    })
    assert resp.status_code == 422


def test_implied_volatility(client):
    resp = client.post("/api/valuations/implied-volatility", json={
        "price": 10.450583572185565, "spot": 100, "strike": 100, "time_to_expiry": 1.0, "risk_free_rate": 0.05,
    })
    body = resp.json()
    assert body["converged"]
    assert body["implied_volatility"] == pytest.approx(0.2, abs=1e-3)


def test_implied_volatility_not_found(client):
    resp = client.post("/api/valuations/implied-volatility", json={
        "price": 150, "spot": 100, "strike": 100, "time_to_expiry": 1.0,
    })
    body = resp.json()
    assert resp.status_code == 200
    assert not body["converged"]
    assert body["implied_volatility"] is None
    assert body["warnings"]


def test_put_implied_volatility(client):
    resp = client.post("/api/valuations/dlom/implied-volatility", json={
        "dlom_percentage": 20.0, "time_to_liquidity": 2.0, "risk_free_rate": 0.04,
    })
    body = resp.json()
    assert resp.status_code == 200
    assert body["converged"]
    assert 0 < body["implied_volatility"] < 2


def test_put_implied_volatility_out_of_range(client):
    resp = client.post("/api/valuations/dlom/implied-volatility", json={
        "dlom_percentage": 0.0, "time_to_liquidity": 2.0,
    })
    body = resp.json()
    assert not body["converged"]
    assert body["implied_volatility"] is None


def test_backsolve(client):
    resp = client.post("/api/valuations/backsolve", json={
        "cap_table": SIMPLE_CAP_TABLE,
        "share_class_id": "series_a",
        "price_per_share": 4.0,
        "opm_parameters": {"time_to_liquidity": 0.0},
    })
    assert resp.status_code == 200
    assert resp.json()["total_equity_value"] == pytest.approx(6_000_000, rel=1e-4)


def test_backsolve_unknown_class(client):
    resp = client.post("/api/valuations/backsolve", json={
        "cap_table": SIMPLE_CAP_TABLE, "share_class_id": "series_z", "price_per_share": 1.0,
    })
    assert resp.status_code == 422


def test_full_valuation(client):
    resp = client.post("/api/valuations", json={
        "company_name": "ApiCo",
        "cap_table": SIMPLE_CAP_TABLE,
        "dcf_assumptions": DCF_BODY,
        "equity_value": 5_000_000,
    })
    assert resp.status_code == 200
    body = resp.json()
    assert body["error"] is None
    assert body["concluded_value"]["equity_value"] > 0
    assert len(body["allocation"]["allocations"]) == 2


def test_async_valuation_stream(client):
    resp = client.post("/api/valuations/async", json={
        "company_name": "StreamCo", "cap_table": SIMPLE_CAP_TABLE, "equity_value": 3_000_000,
    })
    report_id = resp.json()["report_id"]

    events = []
    with client.stream("GET", f"/api/valuations/{report_id}/stream") as stream:
        for line in stream.iter_lines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))

    assert events[-1]["type"] == "complete"
    assert events[-1]["report"]["id"] == report_id
    assert any(e.get("step_name") == "allocate" and e.get("status") == "completed" for e in events)
    assert get_status_registry().get(report_id) is None


def test_unstreamed_async_runs_are_released(client):
    registry = StatusRegistry(ttl_seconds=0.0)
    app.dependency_overrides[get_status_registry] = lambda: registry
    try:
        for _ in range(5):
            client.post("/api/valuations/async", json={
                "company_name": "NoStreamCo", "cap_table": SIMPLE_CAP_TABLE, "equity_value": 3_000_000,
            })
        deadline = time.monotonic() + 10.0
        while (len(registry) or registry.pending_tasks) and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        app.dependency_overrides.clear()

    assert len(registry) == 0
    assert registry.pending_tasks == 0


def test_stream_unknown_id(client):
    assert client.get("/api/valuations/missing/stream").status_code == 404


def test_upload_simple_csv(client):
    csv_text = (
        "year,growth_rate,ebitda_margin,capex_percent,initial_revenue,wacc,terminal_growth_rate\n"
        "2025,20%,0.18,0.04,12000000,0.13,0.03\n"
        "2026,15%,0.20,0.04,,,\n"
        "2027,10%,0.22,0.04,,,\n"
    )
    resp = client.post(
        "/api/valuations/upload-assumptions",
        files={"file": ("model.csv", csv_text, "text/csv")},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["forecast_period"] == 3
    assert body["first_forecast_year"] == 2025
    assert body["revenue_growth_rates"] == pytest.approx([0.2, 0.15, 0.1])
    assert body["wacc"] == pytest.approx(0.13)
    assert body["initial_revenue"] == 12_000_000


def test_upload_sectioned_csv(client):
    csv_text = (
        "Section,Year,Growth Rate,EBITDA Margin,Metric,Value\n"
        "Projections,2025,0.25,0.15,,\n"
        "Projections,2026,0.20,0.18,,\n"
        "Assumptions,,,,Initial Revenue,\"$8,000,000\"\n"
        "Assumptions,,,,WACC,14%\n"
        "Assumptions,,,,Exit Multiple,9x\n"
    )
    resp = client.post(
        "/api/valuations/upload-assumptions",
        files={"file": ("model.csv", csv_text, "text/csv")},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["forecast_period"] == 2
    assert body["ebitda_margins"] == pytest.approx([0.15, 0.18])
    assert body["initial_revenue"] == 8_000_000
    assert body["wacc"] == pytest.approx(0.14)
    assert body["exit_multiple"] == 9.0


def test_upload_json(client):
    resp = client.post(
        "/api/valuations/upload-assumptions",
        files={"file": ("model.json", json.dumps(DCF_BODY), "application/json")},
    )
    assert resp.status_code == 200
    assert resp.json()["forecast_period"] == 3


def test_upload_unsupported(client):
    resp = client.post(
        "/api/valuations/upload-assumptions",
        files={"file": ("model.txt", "hello", "text/plain")},
    )
    assert resp.status_code == 400


def test_upload_unrecognized_csv(client):
    resp = client.post(
        "/api/valuations/upload-assumptions",
        files={"file": ("model.csv", "a,b\n1,2\n", "text/csv")},
    )
    assert resp.status_code == 400
