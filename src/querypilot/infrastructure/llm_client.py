"""
LLM client for OpenRouter using LangChain.

Every model call in QueryPilot goes through LLMClient.generate. Retries are
not done here: callers wrap generate() in a RetryPolicy so that only
rate-limit, overload and transient network errors are retried, and provider
exceptions reach the policy unwrapped.
"""

from typing import List, Optional

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from ..config import LLMConfig
from ..domain.errors import LLMError
from ..utils.logging import get_module_logger
from ..utils.prompt_utils import check_input_size
from ..utils.tracing import current_trace_id


logger = get_module_logger()


class LLMClient:
    """
    LLM client using LangChain's ChatOpenAI against OpenRouter.

    Usage:
        client = LLMClient(settings.llm)
        await client.connect()

        reply = await client.generate(
            "Plan the steps for: orders shipped yesterday",
            system_prompt="You are a SQL query planning assistant.",
        )

        await client.close()
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._llm: Optional[ChatOpenAI] = None
        self._is_connected = False

        logger.info(
            "LLMClient initialized",
            default_model=config.default_model,
            base_url=config.base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )

    async def connect(self) -> None:
        """
        Build the ChatOpenAI client. No API call is made until first use.

        Raises:
            LLMError: If initialization fails
        """
        if self._is_connected:
            logger.warning("LLM client already connected")
            return

        trace_id = current_trace_id()
        logger.info("Initializing LLM client", trace_id=trace_id)

        try:
            # max_retries=0: RetryPolicy owns retrying
            self._llm = ChatOpenAI(
                model=self.config.default_model,
                api_key=SecretStr(self.config.openrouter_api_key),
                base_url=self.config.base_url,
                temperature=self.config.temperature,
                max_completion_tokens=self.config.max_tokens,
                top_p=self.config.top_p,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )

            self._is_connected = True
            logger.info("LLM client initialized successfully", trace_id=trace_id)

        except Exception as e:
            error_msg = f"Failed to initialize LLM client: {e}"
            logger.error(error_msg, error_type=type(e).__name__, trace_id=trace_id)
            raise LLMError(error_msg) from e

    async def close(self) -> None:
        trace_id = current_trace_id()
        logger.info("Closing LLM client", trace_id=trace_id)

        self._is_connected = False
        self._llm = None

        logger.info("LLM client closed", trace_id=trace_id)

    def is_connected(self) -> bool:
        return self._is_connected and self._llm is not None

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Generate a text reply.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt
            temperature: Optional temperature override

        Returns:
            The reply text

        Raises:
            LLMError: If the client is not connected, the input is too large,
                or the reply is empty. Provider errors propagate as raised so
                the retry policy can classify them.
        """
        if not self.is_connected() or self._llm is None:
            raise LLMError("LLM client is not connected")

        try:
            check_input_size(prompt, system_prompt=system_prompt, max_chars=self.config.max_input_chars)
        except ValueError as e:
            raise LLMError(str(e)) from e

        trace_id = current_trace_id()
        logger.debug(
            "Generating LLM response",
            prompt_length=len(prompt),
            system_prompt_length=len(system_prompt) if system_prompt else 0,
            temperature=temperature if temperature is not None else self.config.temperature,
            trace_id=trace_id,
        )

        messages: List[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        llm = self._llm
        if temperature is not None:
            llm = llm.bind(temperature=temperature)  # type: ignore[assignment]

        response = await llm.ainvoke(messages)

        if not response or not response.content:
            raise LLMError("LLM returned empty response")

        content = str(response.content)
        logger.debug("LLM response generated", response_length=len(content), trace_id=trace_id)
        return content
