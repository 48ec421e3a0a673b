"""
Code generation service.

The inbound interface used by the CLI and by embedding applications. Every
collaborator is built explicitly by :meth:`CodeGenService.from_config` and
injected; nothing is held in module-level state.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..config.loader import AppConfig
from ..core.conversation import ConversationStore
from ..core.dispatcher import InferenceDispatcher
from ..core.errors import SessionNotFoundError
from ..core.models import CodeContext, GenerationParams, Request, Response, Role, SourcePreference
from ..core.postprocess import ProcessedResponse, ResponseProcessor
from ..core.prompting import (
    CHAT_TEMPERATURE,
    SUGGESTION_MAX_TOKENS,
    SUGGESTION_PROMPT,
    build_code_context,
    build_completion_prompt,
    build_explanation_prompt,
    build_improvement_prompt,
    detect_language,
    enhance_prompt,
    parse_suggestions,
    sanitize_prompt,
)
from ..core.resources import ResourceGate
from ..core.retry import RetryPolicy
from ..storage.models import ChatMessage
from ..storage.repository import SessionRepository
from .openai_client import OpenAITransport

logger = logging.getLogger(__name__)


def _require_text(value: str, name: str) -> None:
    if not value or not value.strip():
        raise ValueError(f"{name} is required and cannot be empty")


@dataclass(frozen=True)
class GenerationResult:
    """A code generation response with its processed code."""
    response: Response
    processed: Optional[ProcessedResponse] = None

    @property
    def ok(self) -> bool:
        return self.response.ok


class CodeGenService:
    """Code generation and chat on top of the dispatcher."""

    def __init__(
        self,
        config: AppConfig,
        store: ConversationStore,
        dispatcher: InferenceDispatcher,
        processor: Optional[ResponseProcessor] = None,
    ):
        self.config = config
        self.store = store
        self.dispatcher = dispatcher
        self.processor = processor or ResponseProcessor()

    @classmethod
    def from_config(cls, config: AppConfig) -> "CodeGenService":
        """Wire every collaborator from configuration.

        Chat history is persisted to ``chat.history_path`` when
        ``chat.save_history`` is set, otherwise it lives in memory.
        """
        repository = SessionRepository(config.chat.history_path) if config.chat.save_history else None
        store = ConversationStore(repository)
        dispatcher = InferenceDispatcher(
            config=config,
            transport=OpenAITransport(config.external_llm, config.inference),
            gate=ResourceGate(config.resources, prefer_gpu=config.local_llm.use_gpu),
            retry_policy=RetryPolicy(config.retry.backoff(), max_retries=config.retry.max_retries),
        )
        return cls(config, store, dispatcher)

    async def generate(
        self,
        prompt: str,
        language: Optional[str] = None,
        file_context: Optional[str] = None,
        file_path: Optional[str] = None,
        source: SourcePreference = SourcePreference.AUTO,
    ) -> GenerationResult:
        """Generate code for a prompt.

        Args:
            prompt: What to generate
            language: Target language (detected from the prompt if omitted)
            file_context: Code surrounding the insertion point
            file_path: Path of the file being edited
            source: Where the request should run

        Returns:
            GenerationResult; ``processed`` is None when generation failed

        Raises:
            ValueError: If the prompt is empty
        """
        _require_text(prompt, "prompt")

        clean_prompt = sanitize_prompt(prompt)
        context = build_code_context(clean_prompt, language, file_context, file_path)
        return await self._generate_code(enhance_prompt(clean_prompt, context), context, source)

    async def improve_code(
        self,
        code: str,
        description: str,
        language: Optional[str] = None,
        file_path: Optional[str] = None,
        source: SourcePreference = SourcePreference.AUTO,
    ) -> GenerationResult:
        """Rewrite existing code according to a description.

        Raises:
            ValueError: If the code or the description is empty
        """
        _require_text(code, "code")
        _require_text(description, "description")

        language = language or detect_language(code) or "plaintext"
        prompt = build_improvement_prompt(code, sanitize_prompt(description), language)
        return await self._generate_code(prompt, CodeContext(language, file_path=file_path), source)

    async def complete_code(
        self,
        partial_code: str,
        language: Optional[str] = None,
        file_context: Optional[str] = None,
        file_path: Optional[str] = None,
        source: SourcePreference = SourcePreference.AUTO,
    ) -> GenerationResult:
        """Continue a partial piece of code.

        Raises:
            ValueError: If the partial code is empty
        """
        _require_text(partial_code, "partial_code")

        language = language or detect_language(partial_code) or "plaintext"
        prompt = build_completion_prompt(partial_code, language, file_context)
        context = CodeContext(language, surrounding_code=file_context, file_path=file_path)
        return await self._generate_code(prompt, context, source)

    async def explain_code(
        self,
        code: str,
        language: Optional[str] = None,
        source: SourcePreference = SourcePreference.AUTO,
    ) -> Response:
        """Explain a code snippet in prose.

        Returns:
            The Response; on success ``generated_text`` holds the explanation

        Raises:
            ValueError: If the code is empty
        """
        _require_text(code, "code")

        request = Request(prompt=build_explanation_prompt(code, language))
        response = await self.dispatcher.dispatch(request, source)
        if not response.ok:
            logger.error("Code explanation failed: %s", response.error)
        return response

    async def _generate_code(
        self,
        prompt: str,
        context: CodeContext,
        source: SourcePreference,
    ) -> GenerationResult:
        request = Request(prompt=prompt, code_context=context)

        response = await self.dispatcher.dispatch(request, source)
        if not response.ok:
            logger.error("Code generation failed: %s", response.error)
            return GenerationResult(response)

        processed = self.processor.process(response.generated_text, context.language)
        return GenerationResult(response, processed)

    async def send_message(
        self,
        session_id: str,
        text: str,
        source: SourcePreference = SourcePreference.AUTO,
    ) -> ChatMessage:
        """Send a chat message and return the assistant's reply.

        Raises:
            ValueError: If the message is empty
            SessionNotFoundError: If the session does not exist
        """
        _require_text(text, "message")
        _, reply = await self.dispatcher.dispatch_chat(session_id, text, self.store, source)
        return reply

    async def suggest_responses(
        self,
        session_id: str,
        source: SourcePreference = SourcePreference.AUTO,
    ) -> List[str]:
        """Suggest short follow-up messages for a session.

        Suggestions are only generated once the session has at least two
        messages and the last one is from the user. Nothing is written to
        the session, and any failure yields an empty list.

        Returns:
            Up to three suggestions
        """
        try:
            session = self.store.get_session(session_id)
        except SessionNotFoundError as e:
            logger.warning("Failed to generate suggested responses: %s", e)
            return []

        if len(session.messages) < 2 or session.messages[-1].role != Role.USER:
            return []

        request = self.dispatcher.build_chat_request(
            tuple(session.messages),
            SUGGESTION_PROMPT,
            session.system_message,
            GenerationParams(temperature=CHAT_TEMPERATURE, max_tokens=SUGGESTION_MAX_TOKENS),
        )
        response = await self.dispatcher.dispatch(request, source)
        if not response.ok or not response.generated_text:
            logger.warning("Failed to generate suggested responses: %s", response.error)
            return []
        return parse_suggestions(response.generated_text)

    def create_session(self, title: Optional[str] = None, system_message: Optional[str] = None) -> str:
        return self.store.create_session(title, system_message)

    def delete_session(self, session_id: str) -> None:
        self.store.delete_session(session_id)

    def clear_history(self, session_id: str) -> None:
        self.store.clear_history(session_id)

    async def close(self) -> None:
        await self.dispatcher.transport.close()
