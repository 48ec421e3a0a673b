"""
Remote transport for OpenAI-compatible APIs.

Builds request payloads 1:1 from a Request plus configured defaults and
normalizes the provider's answer. Retries are not done here: the SDK's own
retries are disabled so the dispatcher's RetryPolicy is the only retry loop.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from ..config.loader import ExternalLLMConfig, InferenceConfig
from ..core.models import FinishReason, Request
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def map_finish_reason(reason: Optional[str]) -> FinishReason:
    """Map a provider finish reason onto the canonical set.

    Anything unrecognized (including tool calls) is reported as ERROR.
    """
    return _FINISH_REASONS.get(reason or "", FinishReason.ERROR)


@dataclass(frozen=True)
class RemoteCompletion:
    """Normalized provider answer."""
    text: str
    finish_reason: FinishReason
    usage: TokenUsage
    model: Optional[str] = None
    response_id: Optional[str] = None


class OpenAITransport:
    """Async client for ``/chat/completions`` and ``/completions``.

    The underlying AsyncOpenAI client is created on first use, so a
    transport can be built before credentials are known.
    """

    def __init__(
        self,
        external: ExternalLLMConfig,
        inference: InferenceConfig,
        client: Optional[AsyncOpenAI] = None,
    ):
        """Initialize the transport.

        Args:
            external: Endpoint, credentials and default model
            inference: Default sampling parameters and timeout
            client: Pre-built client (mainly for tests)
        """
        self.external = external
        self.inference = inference
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.external.api_key,
                base_url=self.external.endpoint,
                timeout=self.inference.timeout,
                max_retries=0,
            )
        return self._client

    def build_payload(self, request: Request) -> Dict[str, Any]:
        """Build the API payload for a request.

        Chat requests get a ``messages`` list with the system message first;
        plain requests get a ``prompt``.
        """
        params = request.params
        defaults = self.inference
        payload: Dict[str, Any] = {
            "model": request.model or self.external.default_model,
            "max_tokens": params.max_tokens if params.max_tokens is not None else defaults.max_tokens,
            "temperature": params.temperature if params.temperature is not None else defaults.temperature,
            "top_p": params.top_p if params.top_p is not None else defaults.top_p,
            "frequency_penalty": (
                params.frequency_penalty if params.frequency_penalty is not None
                else defaults.frequency_penalty
            ),
            "presence_penalty": (
                params.presence_penalty if params.presence_penalty is not None
                else defaults.presence_penalty
            ),
        }
        if params.stop_sequences:
            payload["stop"] = list(params.stop_sequences)

        if request.is_chat:
            messages: List[Dict[str, str]] = []
            if request.system_message:
                messages.append({"role": "system", "content": request.system_message})
            for turn in request.chat_turns():
                messages.append({"role": turn.role.value, "content": turn.content})
            payload["messages"] = messages
        else:
            payload["prompt"] = request.prompt
        return payload

    async def complete(self, request: Request) -> RemoteCompletion:
        """Send one request to the provider.

        Raises:
            openai.OpenAIError: Transport and API errors, unmodified
            ValueError: If the provider returned no choices
        """
        payload = self.build_payload(request)
        logger.debug(
            "Sending %s request %s to model %s",
            "chat" if request.is_chat else "completion", request.id, payload["model"]
        )

        if request.is_chat:
            response = await self.client.chat.completions.create(**payload)
        else:
            response = await self.client.completions.create(**payload)

        if not response.choices:
            raise ValueError("Provider response contained no choices")
        choice = response.choices[0]
        text = choice.message.content if request.is_chat else choice.text

        usage = TokenUsage()
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0
            )

        return RemoteCompletion(
            text=text or "",
            finish_reason=map_finish_reason(choice.finish_reason),
            usage=usage,
            model=response.model,
            response_id=response.id,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
