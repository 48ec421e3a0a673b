"""
Inference dispatch.

Routes a Request to the remote API or the local model and always answers
with a Response. Failures of any kind are captured into the Response; the
only exception that escapes ``dispatch`` is cancellation.
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Optional, Tuple

from ..config.loader import AppConfig
from ..sdk.local_model import LocalModelBackend, load_local_model
from ..sdk.openai_client import OpenAITransport
from ..storage.models import ChatMessage
from .conversation import ConversationStore
from .errors import ConfigurationError, RetryExhaustedError
from .models import (
    ConversationMessage,
    ErrorKind,
    FinishReason,
    GenerationParams,
    Request,
    Response,
    Role,
    SourcePreference,
    SourceType,
)
from .prompting import chat_params, format_local_prompt
from .resources import AdmissionRejection, ResourceGate
from .retry import RetryPolicy
from .token_counter import estimate_usage

logger = logging.getLogger(__name__)

ERROR_REPLY_TEMPLATE = "I'm sorry, I encountered an error: {error}"


def _elapsed_ms(started: float) -> float:
    return (time.monotonic() - started) * 1000


class InferenceDispatcher:
    """Decides where a request runs and normalizes the result.

    Remote calls are wrapped in the retry policy; local calls must pass the
    resource gate and are never retried. There is no dispatcher-wide lock,
    so independent requests run concurrently.
    """

    def __init__(
        self,
        config: AppConfig,
        transport: OpenAITransport,
        gate: ResourceGate,
        retry_policy: RetryPolicy,
        local_model: Optional[LocalModelBackend] = None,
        model_loader: Callable[[str], LocalModelBackend] = load_local_model,
    ):
        """Initialize the dispatcher.

        Args:
            config: Application configuration
            transport: Remote API transport
            gate: Admission control for local inference
            retry_policy: Retry policy for remote calls
            local_model: Already loaded local model, if any
            model_loader: Loads the configured model on first local use
        """
        self.config = config
        self.transport = transport
        self.gate = gate
        self.retry_policy = retry_policy
        self._local_model = local_model
        self._model_loader = model_loader
        self._load_lock = threading.Lock()

    @property
    def local_available(self) -> bool:
        return self._local_model is not None or self.config.local_llm.has_valid_model

    @property
    def remote_available(self) -> bool:
        return self.config.external_llm.has_credentials

    def resolve_source(self, preference: SourcePreference = SourcePreference.AUTO) -> SourceType:
        """Pick the source for a request.

        AUTO prefers a configured local model, then the remote API.

        Raises:
            ConfigurationError: If the preferred source is not configured
        """
        if preference == SourcePreference.LOCAL:
            if not self.local_available:
                raise ConfigurationError("Local model is not configured or the model path does not exist")
            return SourceType.LOCAL

        if preference == SourcePreference.REMOTE:
            if not self.remote_available:
                raise ConfigurationError("API key is not configured for the remote model")
            return SourceType.REMOTE

        if self.local_available:
            return SourceType.LOCAL
        if self.remote_available:
            return SourceType.REMOTE
        raise ConfigurationError(
            "No inference source configured: set local_llm.model_path or provide an API key"
        )

    def get_local_model(self) -> LocalModelBackend:
        """Return the local model, loading it on first use.

        Raises:
            ConfigurationError: If no model path is configured; errors from
                the model loader propagate unchanged
        """
        with self._load_lock:
            if self._local_model is None:
                model_path = self.config.local_llm.model_path
                if not model_path:
                    raise ConfigurationError("Local model path is not configured")
                self._local_model = self._model_loader(model_path)
            return self._local_model

    async def dispatch(
        self,
        request: Request,
        source: SourcePreference = SourcePreference.AUTO,
    ) -> Response:
        """Fulfil a request and return exactly one Response.

        Args:
            request: The request to run
            source: Where the caller would like it to run

        Returns:
            A Response whose request_id matches the request; failures have
            finish_reason ERROR and an error_kind
        """
        started = time.monotonic()
        try:
            resolved = self.resolve_source(source)
        except ConfigurationError as e:
            logger.error("Cannot dispatch request %s: %s", request.id, e)
            fallback = SourceType.LOCAL if source == SourcePreference.LOCAL else SourceType.REMOTE
            return Response.failure(
                request.id, fallback, str(e), ErrorKind.CONFIGURATION, _elapsed_ms(started)
            )

        logger.info("Dispatching request %s to %s model", request.id, resolved.value)
        if resolved == SourceType.REMOTE:
            return await self._dispatch_remote(request, started)
        return await self._dispatch_local(request, started)

    async def _dispatch_remote(self, request: Request, started: float) -> Response:
        try:
            completion = await self.retry_policy.execute(
                lambda: self.transport.complete(request),
                max_retries=self.config.retry.max_retries,
            )
        except RetryExhaustedError as e:
            return Response.failure(
                request.id, SourceType.REMOTE, str(e), ErrorKind.TRANSPORT, _elapsed_ms(started)
            )

        error = None
        error_kind = None
        if completion.finish_reason == FinishReason.ERROR:
            error = "Generation ended with an unexpected finish reason"
            error_kind = ErrorKind.TRANSPORT

        return Response(
            request_id=request.id,
            generated_text=completion.text,
            source=SourceType.REMOTE,
            finish_reason=completion.finish_reason,
            token_usage=completion.usage,
            latency_ms=_elapsed_ms(started),
            error=error,
            error_kind=error_kind,
            model=completion.model,
        )

    async def _dispatch_local(self, request: Request, started: float) -> Response:
        try:
            model = await asyncio.to_thread(self.get_local_model)
        except ConfigurationError as e:
            logger.error("Local model unavailable: %s", e)
            return Response.failure(
                request.id, SourceType.LOCAL, str(e), ErrorKind.CONFIGURATION, _elapsed_ms(started)
            )
        except Exception as e:
            logger.error("Local model failed to load for request %s: %s", request.id, e)
            return Response.failure(
                request.id,
                SourceType.LOCAL,
                f"Local model failed to load: {e}",
                ErrorKind.LOCAL_FAILURE,
                _elapsed_ms(started),
            )

        admission = self.gate.admit(model.metadata.footprint)
        if isinstance(admission, AdmissionRejection):
            return Response.failure(
                request.id, SourceType.LOCAL, admission.reason, ErrorKind.CAPACITY, _elapsed_ms(started)
            )

        try:
            model_type = self.config.local_llm.model_type or model.model_type
            prompt = format_local_prompt(request, model_type)
            max_tokens = request.params.max_tokens or self.config.inference.max_tokens
            text = await asyncio.to_thread(model.predict, prompt, max_tokens)
        except Exception as e:
            logger.error("Local inference failed for request %s: %s", request.id, e)
            return Response.failure(
                request.id,
                SourceType.LOCAL,
                f"Local inference failed: {e}",
                ErrorKind.LOCAL_FAILURE,
                _elapsed_ms(started),
            )
        finally:
            self.gate.release(admission)

        return Response(
            request_id=request.id,
            generated_text=text,
            source=SourceType.LOCAL,
            token_usage=estimate_usage(prompt, text),
            latency_ms=_elapsed_ms(started),
            model=model.metadata.name,
        )

    def build_chat_request(
        self,
        history: Tuple[ChatMessage, ...],
        prompt: str,
        system_message: Optional[str],
        params: Optional[GenerationParams] = None,
    ) -> Request:
        """Build a chat Request from stored history.

        Only the most recent ``chat.context_window`` messages are sent,
        counting the new prompt; the system message is always kept.
        """
        prior = [m for m in history if m.role != Role.SYSTEM]
        keep = self.config.chat.context_window - 1
        prior = prior[max(0, len(prior) - keep):] if keep > 0 else []
        return Request(
            prompt=prompt,
            conversation_history=tuple(
                ConversationMessage(m.role, m.content, m.timestamp) for m in prior
            ),
            system_message=system_message,
            params=params or chat_params(prompt, self.config.inference.max_tokens),
            chat=True,
        )

    async def dispatch_chat(
        self,
        session_id: str,
        prompt: str,
        store: ConversationStore,
        source: SourcePreference = SourcePreference.AUTO,
        params: Optional[GenerationParams] = None,
    ) -> Tuple[Response, ChatMessage]:
        """Run one chat exchange on a session.

        The user message, the generation and the assistant reply happen
        under the session's lock, so concurrent sends to the same session
        never interleave. A failed generation still appends an assistant
        message describing the error.

        Returns:
            Tuple of (response, stored assistant message)

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        async with store.session_lock(session_id):
            session = store.get_session(session_id)
            request = self.build_chat_request(
                tuple(session.messages), prompt, session.system_message, params
            )
            # History writes go to sqlite in a worker thread
            await asyncio.to_thread(store.add_message, session_id, Role.USER, prompt)

            response = await self.dispatch(request, source)

            if response.ok:
                content = response.generated_text
            else:
                content = ERROR_REPLY_TEMPLATE.format(error=response.error)
            reply = await asyncio.to_thread(store.add_message, session_id, Role.ASSISTANT, content)

        return response, reply
