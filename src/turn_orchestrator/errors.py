# errors.py
# Error taxonomy for the turn orchestrator.
#
# Parse and validation errors never escape the planner's repair loop.
# Everything else is fatal to the current request and is converted into an
# escalation at the orchestrator boundary.


class OrchestrationError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(OrchestrationError):
    """Raised when a required setting is missing or malformed."""


class ProgramParseError(OrchestrationError):
    """Raised when model output is not extractable or parseable as a program."""


class ProgramValidationError(OrchestrationError):
    """Raised when a parsed program violates the turn grammar. Repairable."""


class ProgramEvaluationError(OrchestrationError):
    """Raised when a program cannot be evaluated (e.g. a bad result reference)."""


class UnknownCapabilityError(OrchestrationError):
    """Raised when a program calls a name that resolves to no dispatch target."""


class DelegateError(OrchestrationError):
    """Raised by a delegate that failed to handle its sub-request."""


class CompletionError(OrchestrationError):
    """Raised when the completion service fails or returns no content."""


class RepairExhaustedError(OrchestrationError):
    """Raised when no valid program was produced within the repair budget."""
