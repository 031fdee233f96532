"""Custom exception classes for the application."""

from typing import Any


class StrategyChainError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Request Errors
class ValidationError(StrategyChainError):
    """Malformed request rejected before any mutation."""

    pass


class SubmissionNotFoundError(StrategyChainError):
    """Submission not found."""

    def __init__(self, submission_id: str) -> None:
        self.submission_id = submission_id
        super().__init__(f"Submission not found: {submission_id}")


class StepNotFoundError(ValidationError):
    """Step name is not part of the chain."""

    def __init__(self, step_name: str, known_steps: list[str] | None = None) -> None:
        self.step_name = step_name
        message = f"Invalid step: {step_name}"
        if known_steps:
            message = f"{message}. Must be one of {', '.join(known_steps)}"
        super().__init__(message, {"step": step_name})


# Chain Errors
class ChainError(StrategyChainError):
    """Base class for chain execution errors."""

    pass


class UpstreamError(ChainError):
    """The generation service failed or answered with an unusable shape."""

    def __init__(
        self,
        step_name: str,
        message: str,
        *,
        http_status: int | None = None,
    ) -> None:
        self.step_name = step_name
        self.http_status = http_status
        super().__init__(
            f"{step_name} generation failed: {message}",
            {"step": step_name, "http_status": http_status},
        )


class StepWebhookNotConfiguredError(UpstreamError):
    """No webhook URL configured for a step."""

    def __init__(self, step_name: str) -> None:
        super().__init__(step_name, "no webhook URL configured")


class AmbiguousPayloadError(ChainError):
    """Normalizer found none of the step's marker fields.

    The deepest unwrapped value is kept on ``payload`` so callers can store it
    flagged instead of discarding it.
    """

    def __init__(self, step_name: str, payload: Any, envelopes: list[str]) -> None:
        self.step_name = step_name
        self.payload = payload
        self.envelopes = envelopes
        keys = list(payload.keys())[:10] if isinstance(payload, dict) else []
        super().__init__(
            f"{step_name} payload has no expected marker fields",
            {"step": step_name, "envelopes": envelopes, "payload_keys": keys},
        )


class SubmissionQueueFullError(ChainError):
    """Background queue reached its configured capacity."""

    def __init__(self) -> None:
        super().__init__("Pipeline queue is full, try again shortly")


# Read/Poll Errors
class RateLimitExceededError(StrategyChainError):
    """Read endpoint answered 429."""

    def __init__(self, resource: str) -> None:
        super().__init__(f"Rate limit exceeded for {resource}")


class PollGaveUpError(StrategyChainError):
    """Poll client reached its attempt cap while steps were still pending."""

    def __init__(self, submission_id: str, attempts: int) -> None:
        self.submission_id = submission_id
        self.attempts = attempts
        super().__init__(
            f"Stopped polling {submission_id} after {attempts} attempts",
            {"submission_id": submission_id, "attempts": attempts},
        )
