from typing import Optional

GENERIC_RETRY_TEXT = "Sorry, something went wrong on my side. Could you try that again in a moment?"
CONFIRMATION_FALLBACK_TEXT = "I had trouble logging that, could you repeat what you had?"
LOG_FAILED_TEXT = "I couldn't save that just now, so nothing was logged. Say yes again and I'll retry."
DUPLICATE_LOG_TEXT = "Looks like I already logged that one a moment ago, so I skipped the duplicate."
LLM_UNAVAILABLE_TEXT = "I can't reach my nutrition brain right now. Please try again in a minute."
LLM_AUTH_TEXT = "Your AI provider key was rejected. Please check it in settings and try again."
LLM_RATE_LIMITED_TEXT = "I'm getting a lot of requests right now. Give me a few seconds and try again."


class CoachError(Exception):
    """Base class for errors raised by the conversational core."""


class AuthenticationError(CoachError):
    pass


class CacheRebuildError(CoachError):
    def __init__(self, cache_key: str, message: str):
        super().__init__(f"cache rebuild failed for {cache_key}: {message}")
        self.cache_key = cache_key


class ToolExecutionError(CoachError):
    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolValidationError(ToolExecutionError):
    pass


class ConfirmationWithoutCommitError(CoachError):
    def __init__(self, thread_id: str, confirmation_id: Optional[int]):
        super().__init__(
            f"confirmation turn on thread {thread_id} produced no log_food call "
            f"(pending confirmation {confirmation_id})"
        )
        self.thread_id = thread_id
        self.confirmation_id = confirmation_id


class OnboardingStepOutOfOrder(CoachError):
    def __init__(self, current_step: str, attempted_step: str):
        super().__init__(f"onboarding is at {current_step}, got answer for {attempted_step}")
        self.current_step = current_step
        self.attempted_step = attempted_step
