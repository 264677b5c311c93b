from typing import Optional


class GenerationError(Exception):
    """
    Base error for a graph generation request.

    `user_message` is the short text shown to the end user (never a stack
    trace). `retryable` tells the caller whether "try again" is sensible.
    """

    default_user_message = "Could not generate the knowledge graph. Please try again."
    retryable = False

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message


class InputValidationError(GenerationError):
    """Input rejected before any network call (length, extension, size)."""

    def __init__(self, message: str):
        super().__init__(message, user_message=message)


class LLMInvocationError(GenerationError):
    pass


class TransientServiceError(LLMInvocationError):
    default_user_message = "The AI service is busy right now. Wait a moment and try again."
    retryable = True


class LLMConfigurationError(LLMInvocationError):
    default_user_message = "The AI service is not configured correctly. Contact an administrator."


class LLMServiceError(LLMInvocationError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message, user_message=user_message)
        self.status_code = status_code


class MalformedOutputError(GenerationError):
    default_user_message = "The AI returned an invalid answer. Please try again."
    retryable = True


class UnparsableOutputError(MalformedOutputError):
    pass


class EmptyModelOutputError(MalformedOutputError):
    default_user_message = "The AI returned an empty answer. Please try again."


class GenerationCancelled(Exception):
    """
    Raised at a pass boundary once cancellation was requested.
    Not a GenerationError: cancellation is a terminal state, not a failure.
    """

    def __init__(self, stage: str = ""):
        super().__init__(f"generation cancelled before {stage or 'next pass'}")
        self.stage = stage
