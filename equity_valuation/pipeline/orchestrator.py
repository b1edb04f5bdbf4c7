import time
import uuid
import logging
from datetime import datetime, timezone

from equity_valuation.models.request import DlomInputs, OpmParameters, ValuationRequest
from equity_valuation.models.report import PipelineStep, ValuationReport
from equity_valuation.models.valuations import (
    BacksolveResult, ConcludedEquityValue, DCFResult, DlomResult, WaccResult, WaterfallAllocation,
)
from equity_valuation.services.pipeline_status import PipelineStatus
from equity_valuation.pipeline.step_conclude import InsufficientDataError, conclude_equity_value
from equity_valuation.valuation.backsolve import backsolve_equity_value
from equity_valuation.valuation.breakpoints import build_breakpoints
from equity_valuation.valuation.dcf import compute_dcf_valuation
from equity_valuation.valuation.dlom import compute_dlom
from equity_valuation.valuation.errors import PreconditionViolation
from equity_valuation.valuation.wacc import compute_wacc
from equity_valuation.valuation.waterfall import allocate_equity_value, apply_dlom

logger = logging.getLogger(__name__)

STEP_NAMES = ["validate", "wacc", "dcf", "backsolve", "conclude", "allocate", "dlom"]


class StepFailed(Exception):
    """Internal signal that a step failed and the remaining steps must be skipped."""
    def __init__(self, step_name: str, error: Exception):
        self.step_name = step_name
        self.error = error
        super().__init__(str(error))


class ValuationPipeline:
    def __init__(self, default_parameters: OpmParameters | None = None):
        self.default_parameters = default_parameters or OpmParameters()

    def _parameters_for(self, request: ValuationRequest) -> OpmParameters:
        if "opm_parameters" in request.model_fields_set:
            return request.opm_parameters
        return self.default_parameters

    async def run(
        self,
        request: ValuationRequest,
        report_id: str | None = None,
        status: PipelineStatus | None = None,
    ) -> ValuationReport:
        if report_id is None:
            report_id = str(uuid.uuid4())
        steps: list[PipelineStep] = []
        params = self._parameters_for(request)

        logger.info(f"=== Pipeline started for '{request.company_name}' (id={report_id}) ===")

        report = ValuationReport(
            id=report_id,
            company_name=request.company_name,
            request_summary=request.model_dump(),
            pipeline_steps=steps,
        )

        try:
            await self._run_step("validate", steps, self._validate, request, status=status)

            dcf_assumptions = request.dcf_assumptions
            if request.wacc_inputs is not None:
                wacc: WaccResult = await self._run_step(
                    "wacc", steps, compute_wacc, request.wacc_inputs, status=status
                )
                report.warnings.extend(wacc.warnings)
                report.wacc = wacc
                if dcf_assumptions is not None:
                    dcf_assumptions = dcf_assumptions.model_copy(update={"wacc": wacc.wacc})
            else:
                self._skip("wacc", steps, "No WACC build-up provided", status)

            dcf: DCFResult | None = None
            if dcf_assumptions is not None:
                dcf = await self._run_step(
                    "dcf", steps, compute_dcf_valuation, dcf_assumptions, status=status
                )
                report.warnings.extend(dcf.warnings)
            else:
                self._skip("dcf", steps, "No DCF assumptions provided", status)

            backsolve: BacksolveResult | None = None
            if request.backsolve is not None:
                backsolve = await self._run_step(
                    "backsolve", steps, backsolve_equity_value,
                    request.cap_table, request.backsolve.share_class_id,
                    request.backsolve.price_per_share, params,
                    status=status,
                )
                report.warnings.extend(backsolve.warnings)
            else:
                self._skip("backsolve", steps, "No priced round provided", status)

            concluded: ConcludedEquityValue = await self._run_step(
                "conclude", steps, conclude_equity_value,
                dcf, backsolve, request.equity_value, request.method_weights,
                status=status,
            )
            report.concluded_value = concluded

            allocation: WaterfallAllocation = await self._run_step(
                "allocate", steps, allocate_equity_value,
                concluded.equity_value, request.cap_table, params,
                status=status,
            )
            report.warnings.extend(allocation.warnings)

            dlom_inputs = request.dlom or DlomInputs.from_opm(params)
            dlom: DlomResult = await self._run_step("dlom", steps, compute_dlom, dlom_inputs, status=status)
            report.warnings.extend(dlom.warnings)
            report.dlom = dlom
            report.allocation = apply_dlom(allocation, dlom.concluded_dlom)

        except StepFailed as e:
            report.error = str(e.error)
            if isinstance(e.error, InsufficientDataError):
                report.missing_data = e.error.missing_fields
            # No partial results are returned once a step fails
            report.wacc = None
            report.concluded_value = None
            report.allocation = None
            report.dlom = None
            done = {s.step_name for s in steps}
            for name in STEP_NAMES:
                if name not in done:
                    self._skip(name, steps, f"Skipped after '{e.step_name}' failed", status)

        report.pipeline_steps = steps
        report.created_at = datetime.now(timezone.utc)

        if status:
            status.mark_complete(report)

        value = report.concluded_value.equity_value if report.concluded_value else "FAILED"
        logger.info(f"=== Pipeline completed for '{request.company_name}': equity_value={value} ===")

        return report

    async def _run_step(self, name: str, steps: list[PipelineStep], fn, *args, status: PipelineStatus | None = None):
        step = PipelineStep(step_name=name, status="running", started_at=datetime.now(timezone.utc))
        start = time.time()
        logger.info(f"Step '{name}' started")
        if status:
            status.emit(name, "started")
        try:
            result = fn(*args)
            step.status = "completed"
            step.completed_at = datetime.now(timezone.utc)
            step.duration_ms = (time.time() - start) * 1000
            steps.append(step)
            logger.info(f"Step '{name}' completed in {step.duration_ms:.0f}ms")
            if status:
                status.emit(name, "completed", duration_ms=step.duration_ms)
            return result
        except (PreconditionViolation, InsufficientDataError) as e:
            self._fail(step, start, steps, e, status)
            logger.error(f"Step '{name}' failed in {step.duration_ms:.0f}ms: {e}")
            raise StepFailed(name, e) from e
        except Exception as e:
            self._fail(step, start, steps, e, status)
            logger.exception(f"Step '{name}' encountered an unexpected error")
            raise StepFailed(name, RuntimeError(f"Step '{name}' encountered an unexpected error: {e}")) from e

    @staticmethod
    def _fail(step: PipelineStep, start: float, steps: list[PipelineStep], error: Exception,
              status: PipelineStatus | None):
        step.status = "failed"
        step.error = str(error)
        step.completed_at = datetime.now(timezone.utc)
        step.duration_ms = (time.time() - start) * 1000
        steps.append(step)
        if status:
            status.emit(step.step_name, "failed", duration_ms=step.duration_ms, error=str(error))

    @staticmethod
    def _skip(name: str, steps: list[PipelineStep], reason: str, status: PipelineStatus | None):
        now = datetime.now(timezone.utc)
        steps.append(PipelineStep(
            step_name=name, status="skipped",
            started_at=now, completed_at=now, duration_ms=0, error=reason,
        ))
        if status:
            status.emit(name, "skipped")

    @staticmethod
    def _validate(request: ValuationRequest) -> None:
        """Structural checks beyond field validation: the cap table must yield breakpoints."""
        build_breakpoints(request.cap_table)
        if request.backsolve is not None and request.cap_table.get_share_class(request.backsolve.share_class_id) is None:
            raise PreconditionViolation(
                f"Backsolve share class '{request.backsolve.share_class_id}' is not in the cap table"
            )
