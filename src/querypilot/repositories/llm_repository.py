"""
Base class for repositories that prompt the model.

Every call goes through the RetryPolicy. When retries run out on a
rate-limited or overloaded provider the error becomes a
TransientProviderError with a message the user can act on; other errors
propagate unchanged for the caller to handle or fall back from.
"""

from typing import Optional

from querypilot.domain.errors import TransientProviderError
from querypilot.infrastructure.llm_client import LLMClient
from querypilot.utils.retry import RetryPolicy, is_retryable_error

PROVIDER_OVERLOADED_MESSAGE = (
    "The model provider is currently overloaded or rate limiting requests. "
    "Please try again in a few minutes."
)


class LLMRepository:
    """Shared prompt-and-retry plumbing for the model-backed repositories."""

    system_prompt: Optional[str] = None

    def __init__(self, llm_client: LLMClient, retry_policy: Optional[RetryPolicy] = None):
        self.llm_client = llm_client
        self.retry_policy = retry_policy or RetryPolicy()

    async def _generate(self, prompt: str, operation: str) -> str:
        try:
            return await self.retry_policy.run(
                lambda: self.llm_client.generate(prompt, system_prompt=self.system_prompt),
                operation=operation,
            )
        except Exception as exc:
            if is_retryable_error(exc):
                raise TransientProviderError(
                    PROVIDER_OVERLOADED_MESSAGE,
                    details={"operation": operation, "error": str(exc)},
                ) from exc
            raise
