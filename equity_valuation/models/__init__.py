from equity_valuation.models.cap_table import CapTable, OptionTranche, ShareClass
from equity_valuation.models.request import (
    BacksolveTarget, DcfAssumptions, DlomInputs, DlomWeights, HybridScenario, HybridValuationInputs,
    OpmParameters, PeerCompany, StubPeriod, StubPeriodInputs, ValuationRequest, WaccInputs,
)
from equity_valuation.models.valuations import (
    BacksolveResult, Breakpoint, CapitalStructurePoint, ConcludedEquityValue, DCFResult, DcfProjection,
    DlomResult, HybridScenarioResult, HybridValuationResult, MethodologyWeight, OptimalCapitalStructure,
    ParticipatingSecurity, SecurityAllocation, SegmentValuation, SensitivityCell, StubPeriodResult,
    TerminalAssumptions, WaccResult, WaterfallAllocation,
)
from equity_valuation.models.report import PipelineStep, ValuationReport

__all__ = [
    "CapTable", "OptionTranche", "ShareClass",
    "BacksolveTarget", "DcfAssumptions", "DlomInputs", "DlomWeights", "HybridScenario", "HybridValuationInputs",
    "OpmParameters", "PeerCompany", "StubPeriod", "StubPeriodInputs", "ValuationRequest", "WaccInputs",
    "BacksolveResult", "Breakpoint", "CapitalStructurePoint", "ConcludedEquityValue", "DCFResult", "DcfProjection",
    "DlomResult", "HybridScenarioResult", "HybridValuationResult", "MethodologyWeight", "OptimalCapitalStructure",
    "ParticipatingSecurity", "SecurityAllocation", "SegmentValuation", "SensitivityCell", "StubPeriodResult",
    "TerminalAssumptions", "WaccResult", "WaterfallAllocation",
    "PipelineStep", "ValuationReport",
]
