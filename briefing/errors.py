"""Exception hierarchy for the generation pipeline and the feedback loop."""
from __future__ import annotations


class GenerationError(Exception):
    """Base class for every failure that moves a job to ERROR."""


class PreconditionError(GenerationError):
    """Input is missing before any model call is attempted."""


class NoDataError(PreconditionError):
    """Ingestion produced zero rows across all attached files."""

    def __init__(self, message: str = "No data rows found in the uploaded files"):
        super().__init__(message)


class LLMCallError(GenerationError):
    """LLM call failed or returned a non-text response."""


class GenerationParseError(GenerationError):
    """Model output could not be parsed into the expected payload."""

    EXCERPT_CHARS = 200

    def __init__(self, message: str, raw_text: str = ""):
        self.excerpt = (raw_text or "")[: self.EXCERPT_CHARS]
        super().__init__(message)


class MissingArtifactError(GenerationError):
    """Parsed payload has no ``html`` field."""


class InvalidArtifactError(GenerationError):
    """Refined output does not look like an HTML document."""


class FeedbackError(Exception):
    """Base class for human-resolution failures on questions and proposals."""


class AlreadyResolvedError(FeedbackError):
    """The question or proposal has already reached a terminal state."""


class InvalidFeedbackError(FeedbackError):
    """Empty answer text or unknown vote action."""
