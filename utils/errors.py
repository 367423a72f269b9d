"""
Error taxonomy for the tutorial pipeline.

Stage errors abort the whole run. Cache persistence errors are caught by the
flow driver and downgraded to "no cache available".
"""


class TutorialGenError(Exception):
    """Base class for every error raised by the pipeline."""


class MissingUpstreamData(TutorialGenError):
    """A stage found a required shared-context field empty or absent."""

    def __init__(self, stage: str, field: str, detail: str = ""):
        self.stage = stage
        self.field = field
        message = f"{stage}: required field '{field}' not found in shared context"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class StructuredOutputError(TutorialGenError):
    """Base class for validator failures on model output."""


class MalformedOutput(StructuredOutputError):
    """No fenced block, unparsable block, or wrong top-level / item shape."""


class InvalidReference(StructuredOutputError):
    """A file or abstraction index is not a non-negative integer in range."""


class IncompleteOrder(StructuredOutputError):
    """A chapter order is not a permutation of all abstraction indices."""


class LLMCallFailure(TutorialGenError):
    """The LLM call service failed. The provider error is chained."""


class CachePersistenceFailure(TutorialGenError):
    """Reading or writing a cache file failed."""


class StageFailure(TutorialGenError):
    """A pipeline stage gave up. Carries the stage name and the cause."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {type(cause).__name__}: {cause}")
