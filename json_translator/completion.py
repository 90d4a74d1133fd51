"""Completion service abstraction and its OpenAI and dry-run implementations."""
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import tiktoken
from openai import (
    APIConnectionError,
    APIStatusError,
    RateLimitError,
    APITimeoutError,
    OpenAIError
)
from openai import AsyncOpenAI
from openai.types.chat import (
    ChatCompletionMessageParam,
    ChatCompletionSystemMessageParam,
    ChatCompletionUserMessageParam
)

from json_translator.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class CompletionResponse:
    text: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"


class CompletionService(ABC):
    """Abstract text-generation capability used by every pipeline stage."""

    name = "completion"

    @abstractmethod
    async def complete(
            self,
            prompt: str,
            system_message: Optional[str] = None,
            temperature: float = 0.3,
            max_tokens: Optional[int] = None,
            json_response: bool = False,
    ) -> CompletionResponse:
        """
        Generate a completion for ``prompt``.

        Args:
            prompt: The user prompt.
            system_message: Optional system instructions sent before the prompt.
            temperature: Sampling temperature.
            max_tokens: Upper bound for the completion length, if any.
            json_response: Ask the provider for a JSON object answer.

        Returns:
            CompletionResponse: The generated text and token usage.

        Raises:
            ProviderError: If the provider call fails.
        """


def count_tokens(text: str, model_name: str = 'gpt-3.5-turbo') -> int:
    """Count the number of tokens in ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` may need to download model data. When that
    is not possible the ``gpt2`` encoding bundled with ``tiktoken`` is used, and
    as a last resort a whitespace split.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("gpt2")
        except Exception:
            return len(text.split())

    try:
        return len(encoding.encode(text))
    except Exception:
        return len(text.split())


def _retry_after_seconds(api_exc: OpenAIError) -> Optional[float]:
    response = getattr(api_exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    retry_after_header = headers.get("Retry-After") or headers.get("retry-after")
    if not retry_after_header:
        return None
    try:
        if retry_after_header.endswith("ms"):
            return float(retry_after_header[:-2]) / 1000
        return float(retry_after_header)
    except ValueError:
        logger.warning("Ignoring unparsable Retry-After header: %s", retry_after_header)
        return None


class OpenAICompletionService(CompletionService):
    """Chat completions through ``openai.AsyncOpenAI``."""

    name = "openai"

    def __init__(self, client: AsyncOpenAI, model_name: str, timeout: float = 60.0):
        self.client = client
        self.model_name = model_name
        self.timeout = timeout

    async def complete(
            self,
            prompt: str,
            system_message: Optional[str] = None,
            temperature: float = 0.3,
            max_tokens: Optional[int] = None,
            json_response: bool = False,
    ) -> CompletionResponse:
        messages: List[ChatCompletionMessageParam] = []
        if system_message:
            messages.append(ChatCompletionSystemMessageParam(role="system", content=system_message))
        messages.append(ChatCompletionUserMessageParam(role="user", content=prompt))

        request: Dict[str, Any] = {
            "model": self.model_name,
            "messages": messages,
            "temperature": temperature,
            "timeout": self.timeout,
        }
        if max_tokens:
            request["max_tokens"] = max_tokens
        if json_response:
            request["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**request)
        except (RateLimitError, APITimeoutError, APIConnectionError, APIStatusError, OpenAIError) as api_exc:
            logger.error(f"API error occurred: {api_exc.__class__.__name__} - {api_exc}")
            error = ProviderError(f"{api_exc.__class__.__name__} from chat completions API",
                                  cause=api_exc, model=self.model_name)
            retry_after = _retry_after_seconds(api_exc)
            if retry_after is not None:
                error.with_context("retry_after", retry_after)
            raise error from api_exc

        if not response.choices:
            raise ProviderError("chat completions API returned no choices", model=self.model_name)
        choice = response.choices[0]
        text = (choice.message.content or "").strip()

        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
                total_tokens=response.usage.total_tokens,
            )
        else:
            prompt_tokens = count_tokens((system_message or "") + prompt, self.model_name)
            completion_tokens = count_tokens(text, self.model_name)
            usage = TokenUsage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)

        return CompletionResponse(text=text, token_usage=usage, finish_reason=choice.finish_reason or "stop")


class DryRunCompletionService(CompletionService):
    """Answers batch prompts by echoing the numbered source texts back.

    No provider is contacted, so dry runs exercise the whole pipeline (batching,
    parsing, tree reconstruction) without an API key.
    """

    name = "dry_run"
    _NUMBERED_LINE = re.compile(r'^\[\d+\] .*$', re.MULTILINE)

    async def complete(
            self,
            prompt: str,
            system_message: Optional[str] = None,
            temperature: float = 0.3,
            max_tokens: Optional[int] = None,
            json_response: bool = False,
    ) -> CompletionResponse:
        text = "{}" if json_response else "\n".join(self._NUMBERED_LINE.findall(prompt))
        tokens = len(prompt.split())
        logger.debug("[DRY RUN] Echoing %d numbered lines", text.count("\n") + 1 if text else 0)
        return CompletionResponse(text=text, token_usage=TokenUsage(tokens, tokens, 2 * tokens))
