"""Error taxonomy for the signal pipeline.

Anything that is not a NonRetryableError is treated as transient by the
queue worker: the message is abandoned and redelivered with backoff until
its delivery budget runs out.
"""


class SignalPipelineError(Exception):
    """Base class for pipeline-specific failures."""


class NonRetryableError(SignalPipelineError):
    """A message that redelivery can never fix. Dead-lettered with a reason code."""

    reason_code = "NonRetryable"

    def __init__(self, message: str, *, reason_code: str | None = None) -> None:
        super().__init__(message)
        if reason_code is not None:
            self.reason_code = reason_code


class RoutingConfigurationError(NonRetryableError):
    """A priority with no destination queue. Always a deployment bug."""

    reason_code = "UnmappedPriority"


class MessageDecodeError(NonRetryableError):
    """Payload could not be validated against its wire model."""

    reason_code = "DeserializationFailed"


class InvalidTransitionError(SignalPipelineError):
    """A lifecycle transition that the entity does not allow."""
