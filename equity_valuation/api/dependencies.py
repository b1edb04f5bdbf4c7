import os
from functools import lru_cache

from equity_valuation.models.request import OpmParameters
from equity_valuation.pipeline.orchestrator import ValuationPipeline
from equity_valuation.services.pipeline_status import StatusRegistry


@lru_cache
def get_default_parameters() -> OpmParameters:
    """OPM defaults, overridable through the environment."""
    return OpmParameters(
        time_to_liquidity=float(os.getenv("DEFAULT_TIME_TO_LIQUIDITY", "3.0")),
        risk_free_rate=float(os.getenv("DEFAULT_RISK_FREE_RATE", "0.045")),
        volatility=float(os.getenv("DEFAULT_VOLATILITY", "0.60")),
    )


def get_pipeline() -> ValuationPipeline:
    return ValuationPipeline(default_parameters=get_default_parameters())


@lru_cache
def get_status_registry() -> StatusRegistry:
    """Registry of background runs; unstreamed statuses expire after STATUS_TTL_SECONDS."""
    return StatusRegistry(ttl_seconds=float(os.getenv("STATUS_TTL_SECONDS", "300")))
