"""Error types raised by the Bonsai core.

Every error carries a human-readable message; the session dispatcher turns
them into outbound notifications, never into process crashes.
"""


class BonsaiError(Exception):
    """Base class for all Bonsai errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BonsaiError):
    """Malformed input, e.g. an import payload with the wrong schema tag."""


# Import payload rejected by schema validation
SchemaError = ValidationError


class NotFoundError(BonsaiError):
    """A command referenced a node id that does not exist."""


class NoSelectionError(BonsaiError):
    """Generation was requested without a selected node."""


class TransientUpstreamError(BonsaiError):
    """A single LLM request failed; the client retries it."""


class UnrecoverableGenerationError(BonsaiError):
    """The LLM client gave up; the current batch stops."""


class AnalysisUnavailableError(BonsaiError):
    """The code metrics analyzer is missing or failed."""


class ExportPreconditionError(BonsaiError):
    """Export requested while the active branch only holds its root."""


NothingToExportError = ExportPreconditionError
