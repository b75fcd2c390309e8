"""Exception hierarchy for the pain-point pipeline.

Everything raised on purpose by the pipeline derives from PipelineError so the
CLI and web layer can catch at the granularity they need.
"""


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class ConfigurationError(PipelineError):
    """Raised when a required setting or credential is missing or invalid."""

    def __init__(self, key: str, reason: str = "missing or empty"):
        self.key = key
        super().__init__(f"Configuration error for '{key}': {reason}")


class ProviderError(PipelineError):
    """Raised when the external AI provider call fails."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimited(ProviderError):
    """Provider answered 429."""

    retryable = True


class TransientProviderError(ProviderError):
    """Provider answered 5xx, timed out or dropped the connection."""

    retryable = True


class PermanentProviderError(ProviderError):
    """Provider answered 4xx (other than 429). Never retried."""


class PersistenceError(PipelineError):
    """Raised when a record store read or write fails."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        super().__init__(f"Store error during {operation}: {detail}")


class ValidationError(PipelineError):
    """Raised on malformed data, e.g. an embedding of the wrong dimension."""


class JobNotFound(PipelineError):
    """Raised when a job id does not exist in any stage table."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidTransition(PipelineError):
    """Raised when a job status change would move the state machine backwards."""

    def __init__(self, job_id: str, target: str, current: str | None):
        self.job_id = job_id
        self.target = target
        self.current = current
        super().__init__(f"Job {job_id} cannot move to '{target}' from '{current}'")


class StageTriggerError(PipelineError):
    """Raised when the next stage could not be started over HTTP.

    ``details`` carries how much work the calling stage had already finished
    (e.g. ``{"clusters_completed": 4}``) so it ends up in the failed job.
    """

    def __init__(self, step: str, message: str, details: dict | None = None):
        self.step = step
        self.message = message
        self.details = details or {}
        text = f"{step} failed: {message}"
        if self.details:
            text += " (" + ", ".join(f"{k}={v}" for k, v in self.details.items()) + ")"
        super().__init__(text)


class StageStepError(PipelineError):
    """Raised when one step of a stage loop fails, e.g. fetching the next batch."""

    def __init__(self, stage: str, step: str, cause: Exception):
        self.stage = stage
        self.step = step
        super().__init__(f"{stage}: {step} failed: {cause}")
