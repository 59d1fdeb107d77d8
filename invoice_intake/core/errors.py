"""
Error taxonomy for the intake pipeline.

Fatal pipeline errors carry the stage they were raised in and a short
message that can be relayed back to the person who submitted the document.
Validation findings and duplicate submissions are results, not exceptions.
"""

from typing import Optional


class IntakeError(Exception):
    """Base class for all intake errors."""


class PipelineError(IntakeError):
    """A fatal error that aborts processing of one document."""

    stage = "pipeline"
    default_user_message = "Sorry, we could not process this document."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class NormalizationError(PipelineError):
    """Raw bytes could not be turned into usable page images."""

    stage = "normalization"
    default_user_message = "The file looks damaged or is not a supported PDF/image. Please resend it."


class RecognitionExhaustedError(PipelineError):
    """Every recognition engine failed or timed out for a page."""

    stage = "recognition"
    default_user_message = "We could not read any text from this document. Please send a clearer scan."


class SchemaViolationError(PipelineError):
    """Extracted data is missing required structure."""

    stage = "extraction"
    default_user_message = "We could not find the required details in this document."

    def __init__(self, message: str, missing: Optional[list] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.missing = missing or []


class ExtractionBackendError(PipelineError):
    """The structured extraction backend failed or returned unusable output."""

    stage = "extraction"
    default_user_message = "We could not read the details of this document right now. Please try again later."


class StageFailure(PipelineError):
    """An unexpected exception raised inside a pipeline stage."""

    def __init__(self, stage: str, message: str, user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.stage = stage


class EngineError(IntakeError):
    """Normalized failure of a single recognition engine call."""

    def __init__(self, engine: str, message: str, retryable: bool = True):
        super().__init__(f"{engine}: {message}")
        self.engine = engine
        self.retryable = retryable


class ReviewQueueError(IntakeError):
    """Base class for review workflow errors."""


class ReviewItemNotFound(ReviewQueueError):
    pass


class AssignmentConflict(ReviewQueueError):
    """Another reviewer already holds the item."""

    def __init__(self, item_id: int, reviewer: str, holder: Optional[str] = None):
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"Review item {item_id} cannot be assigned to {reviewer}{detail}")
        self.item_id = item_id
        self.reviewer = reviewer
        self.holder = holder


class InvalidReviewTransition(ReviewQueueError):
    """The requested review action is not allowed from the item's status."""


class IllegalTransition(IntakeError):
    """A conversational session event has no entry in the transition table."""

    def __init__(self, state: str, event: str):
        super().__init__(f"No transition from '{state}' on '{event}'")
        self.state = state
        self.event = event
