import asyncio
import re
from typing import Callable, List, Optional, Union

import pytest

from json_translator.completion import CompletionResponse, CompletionService, TokenUsage

NUMBERED_LINE = re.compile(r'^\[(\d+)\] (.*)$', re.MULTILINE)

Reply = Union[str, CompletionResponse, BaseException]


class ScriptedCompletionService(CompletionService):
    """Completion service double driven by a handler that receives each prompt.

    The handler returns the reply text (or a full CompletionResponse), or an
    exception instance to raise. Coroutine handlers are awaited.
    """

    name = "scripted"

    def __init__(self, handler: Callable[[str], Reply], tokens_per_call: int = 10):
        self.handler = handler
        self.tokens_per_call = tokens_per_call
        self.prompts: List[str] = []
        self.system_messages: List[Optional[str]] = []
        self.max_tokens: List[Optional[int]] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def complete(self, prompt, system_message=None, temperature=0.3, max_tokens=None, json_response=False):
        self.prompts.append(prompt)
        self.system_messages.append(system_message)
        self.max_tokens.append(max_tokens)
        reply = self.handler(prompt)
        if asyncio.iscoroutine(reply):
            reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, CompletionResponse):
            return reply
        usage = TokenUsage(self.tokens_per_call // 2, self.tokens_per_call - self.tokens_per_call // 2,
                           self.tokens_per_call)
        return CompletionResponse(text=reply, token_usage=usage)


def numbered_texts(prompt: str) -> List[tuple]:
    """Return the ``(number, text)`` pairs of a batch prompt."""
    return [(int(number), text) for number, text in NUMBERED_LINE.findall(prompt)]


def prefixed_translation(prefix: str) -> Callable[[str], str]:
    """Handler answering every batch prompt with ``[n] <prefix>text``."""
    def handler(prompt: str) -> str:
        return "\n".join(f"[{number}] {prefix}{text}" for number, text in numbered_texts(prompt))
    return handler


@pytest.fixture
def scripted_service():
    """Factory for scripted completion services."""
    return ScriptedCompletionService


@pytest.fixture
def prefix_handler():
    return prefixed_translation


@pytest.fixture
def sample_tree():
    return {
        "app": {
            "title": "Dashboard",
            "welcome": "Hello {name}, welcome back!",
        },
        "buttons": {
            "save": "Save",
            "cancel": "Cancel",
        },
        "items": ["First", "Second"],
        "meta": {"version": 3, "beta": True},
    }
