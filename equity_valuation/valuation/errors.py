class ValuationError(Exception):
    """Base class for errors raised by the valuation engine."""


class PreconditionViolation(ValuationError):
    """Raised when inputs violate a precondition and no result can be produced."""


class DivisionDegenerate(PreconditionViolation):
    """Raised when a discount-rate spread is zero or negative (e.g. WACC <= terminal growth)."""

    def __init__(self, message: str, wacc: float, growth_rate: float):
        self.wacc = wacc
        self.growth_rate = growth_rate
        super().__init__(message)


class ModelInconsistency(PreconditionViolation):
    """Raised when a cap table cannot be turned into a consistent set of breakpoints."""
