"""Exception hierarchy for the takeoff extraction engine."""


class TakeoffError(Exception):
    """Base exception for all takeoff-specific errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(TakeoffError):
    """Raised when an extraction setting or identification pattern is invalid."""


class UpstreamParseFailure(TakeoffError):
    """
    Raised when the drawing handed over by the parser is missing or malformed.

    Fatal for the import: the pipeline aborts and no records are returned.
    """


class ExtractionCancelled(TakeoffError):
    """Raised at a batch boundary once the caller has set the cancel token."""

    def __init__(self, progress_pct: int):
        self.progress_pct = progress_pct
        super().__init__(
            f"Extraction cancelled at {progress_pct}%; no records were committed.",
            details={"progress_pct": str(progress_pct)},
        )
