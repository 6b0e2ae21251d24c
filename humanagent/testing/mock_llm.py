"""Scripted chat model for tests."""

from typing import Any
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

from langchain_core.callbacks import CallbackManagerForLLMRun
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage
from langchain_core.messages import BaseMessage
from langchain_core.outputs import ChatGeneration
from langchain_core.outputs import ChatResult

Script = Union[str, BaseException, Callable[[List[BaseMessage]], str]]

DEFAULT_RESPONSE = "Hello! I'm a mock assistant. I received your message and I'm responding appropriately."


class ScriptedChatModel(BaseChatModel):
    """A chat model that replays predefined responses in order.

    Each script entry is a string (returned as the reply), an exception
    (raised) or a callable receiving the prompt messages.  Once the script is
    exhausted the last entry is repeated.  Every call's messages are kept in
    :attr:`calls`.
    """

    model_name: str = "gpt-mock"
    responses: List[Any] = []
    calls: List[List[BaseMessage]] = []
    tokens_per_call: int = 30

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def _next(self, messages: List[BaseMessage]) -> str:
        self.calls.append(list(messages))
        if not self.responses:
            return DEFAULT_RESPONSE
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        entry = self.responses[index]
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            return entry(messages)
        return entry

    def _generate(
        self,
        messages: List[BaseMessage],
        stop: Optional[List[str]] = None,
        run_manager: Optional[CallbackManagerForLLMRun] = None,
        **kwargs: Any,
    ) -> ChatResult:
        text = self._next(messages)
        prompt_tokens = self.tokens_per_call // 3 * 2
        completion_tokens = self.tokens_per_call - prompt_tokens
        message = AIMessage(
            content=text,
            usage_metadata={
                "input_tokens": prompt_tokens,
                "output_tokens": completion_tokens,
                "total_tokens": self.tokens_per_call,
            },
        )
        return ChatResult(generations=[ChatGeneration(message=message)])

    @property
    def _llm_type(self) -> str:
        return "scripted-chat"

    @property
    def _identifying_params(self) -> Dict[str, Any]:
        return {"model_name": self.model_name}


__all__ = ["ScriptedChatModel", "DEFAULT_RESPONSE"]
