"""Error taxonomy for the estimate pricing engine."""


class PricingError(Exception):
    """Base class for every error raised by the pricing engine."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


# ── Authoring-time formula errors ────────────────────────────────────────────
class FormulaError(PricingError):
    pass


class EmptyFormula(FormulaError):
    pass


class IllegalCharacter(FormulaError):
    pass


class MalformedFormula(FormulaError):
    pass


# ── Compute-time preconditions ───────────────────────────────────────────────
class TemplateNotBound(PricingError):
    pass


class MeasurementsMissing(PricingError):
    pass


# ── Lookups and payload checks ───────────────────────────────────────────────
class EstimateNotFound(PricingError):
    pass


class TemplateNotFound(PricingError):
    pass


class TemplateInactive(PricingError):
    pass


class TemplateItemNotFound(PricingError):
    pass


class PricingNotComputed(PricingError):
    pass


class InvalidMeasurementPayload(PricingError):
    pass


# ── Storage range ────────────────────────────────────────────────────────────
class AmountOutOfRange(PricingError):
    pass
