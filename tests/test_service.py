"""
Unit tests for the code generation service.
"""

import os
import shutil
import tempfile

import pytest

from cipher_coder.config.loader import AppConfig, ChatConfig, ExternalLLMConfig
from cipher_coder.core.conversation import ConversationStore
from cipher_coder.core.dispatcher import InferenceDispatcher
from cipher_coder.core.models import FinishReason, Role
from cipher_coder.core.resources import ResourceGate
from cipher_coder.core.retry import RetryPolicy
from cipher_coder.core.token_counter import TokenUsage
from cipher_coder.sdk.openai_client import OpenAITransport, RemoteCompletion
from cipher_coder.sdk.service import CodeGenService


class FakeTransport:
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error
        self.requests = []
        self.closed = False

    async def complete(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return RemoteCompletion(self.text, FinishReason.STOP, TokenUsage(4, 6), "remote-model")

    async def close(self):
        self.closed = True


class AuthError(Exception):
    status_code = 401


def _service(transport):
    config = AppConfig(
        external_llm=ExternalLLMConfig(api_key="test-key"),
        chat=ChatConfig(save_history=False),
    )
    dispatcher = InferenceDispatcher(
        config=config,
        transport=transport,
        gate=ResourceGate(config.resources),
        retry_policy=RetryPolicy(max_retries=0),
    )
    return CodeGenService(config, ConversationStore(), dispatcher)


class TestGenerate:
    """Test code generation."""

    @pytest.mark.asyncio
    async def test_generate_extracts_code(self):
        transport = FakeTransport("Here:\n```python\ndef add(a, b):\n    return a + b\n```")
        service = _service(transport)

        result = await service.generate("write a python function that adds numbers")

        assert result.ok
        assert result.processed.code == "def add(a, b):\n    return a + b"
        assert result.processed.language == "python"
        assert result.processed.valid

        request = transport.requests[0]
        assert not request.is_chat
        assert request.prompt.startswith("Using python, ")
        assert request.code_context.language == "python"

    @pytest.mark.asyncio
    async def test_prompt_is_sanitized_and_enhanced_with_file(self):
        transport = FakeTransport("```js\nconst x = 1;\n```")
        service = _service(transport)

        await service.generate(
            "add a constant, token=abc123",
            language="javascript",
            file_context="let y = 2;",
            file_path="src/app.js",
        )

        prompt = transport.requests[0].prompt
        assert "abc123" not in prompt
        assert "```javascript\nlet y = 2;\n```" in prompt
        assert "src/app.js (js file)" in prompt

    @pytest.mark.asyncio
    async def test_failure_has_no_processed_output(self):
        service = _service(FakeTransport(error=AuthError("bad key")))

        result = await service.generate("write a function")

        assert not result.ok
        assert result.processed is None
        assert result.response.finish_reason == FinishReason.ERROR

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self):
        with pytest.raises(ValueError):
            await _service(FakeTransport()).generate("   ")


class TestCodeTasks:
    """Test explaining, improving and completing code."""

    @pytest.mark.asyncio
    async def test_explain_code_returns_prose(self):
        transport = FakeTransport("It adds two numbers.")
        service = _service(transport)

        response = await service.explain_code("def add(a, b):\n    return a + b")

        assert response.ok
        assert response.generated_text == "It adds two numbers."
        prompt = transport.requests[0].prompt
        assert prompt.startswith("Please explain the following python code")
        assert "```python\ndef add(a, b):\n    return a + b\n```" in prompt

    @pytest.mark.asyncio
    async def test_explain_code_failure_is_a_response(self):
        service = _service(FakeTransport(error=AuthError("bad key")))

        response = await service.explain_code("x = 1", language="python")

        assert not response.ok
        assert response.finish_reason == FinishReason.ERROR

    @pytest.mark.asyncio
    async def test_improve_code_keeps_code_layout(self):
        transport = FakeTransport("```python\ndef add(a: int, b: int) -> int:\n    return a + b\n```")
        service = _service(transport)
        code = "def add(a, b):\n    return a + b"

        result = await service.improve_code(code, "add type hints, token=abc123")

        assert result.ok
        assert result.processed.code.startswith("def add(a: int, b: int)")
        assert result.processed.language == "python"

        request = transport.requests[0]
        assert f"```python\n{code}\n```" in request.prompt
        assert "I want to improve it by: add type hints" in request.prompt
        assert "abc123" not in request.prompt
        assert request.code_context.language == "python"

    @pytest.mark.asyncio
    async def test_complete_code_includes_file_context(self):
        transport = FakeTransport("```javascript\nfunction sum(xs) { return xs.reduce((a, b) => a + b, 0); }\n```")
        service = _service(transport)

        result = await service.complete_code(
            "function sum(xs) {",
            language="javascript",
            file_context="const values = [1, 2, 3];",
            file_path="src/sum.js",
        )

        assert result.ok
        assert result.processed.valid
        request = transport.requests[0]
        assert request.prompt.startswith("Complete the following javascript code:")
        assert "Here is additional context from the file:" in request.prompt
        assert request.code_context.file_path == "src/sum.js"

    @pytest.mark.asyncio
    async def test_empty_inputs_rejected(self):
        service = _service(FakeTransport())

        with pytest.raises(ValueError):
            await service.explain_code("")
        with pytest.raises(ValueError):
            await service.improve_code("x = 1", " ")
        with pytest.raises(ValueError):
            await service.complete_code("")


class TestSuggestions:
    """Test follow-up suggestions for a chat session."""

    def _session_ending_with_user(self, service):
        session_id = service.create_session()
        service.store.add_message(session_id, Role.USER, "How do I read a file?")
        service.store.add_message(session_id, Role.ASSISTANT, "Use open().")
        service.store.add_message(session_id, Role.USER, "And write one?")
        return session_id

    @pytest.mark.asyncio
    async def test_returns_at_most_three_lines(self):
        transport = FakeTransport("Show an example\n\n  Explain modes  \nHandle errors\nUse pathlib\n")
        service = _service(transport)
        session_id = self._session_ending_with_user(service)

        suggestions = await service.suggest_responses(session_id)

        assert suggestions == ["Show an example", "Explain modes", "Handle errors"]
        request = transport.requests[0]
        assert request.is_chat
        assert request.prompt.startswith("Based on the conversation, suggest 3")
        assert request.params.max_tokens == 150
        assert len(service.store.get_session(session_id).messages) == 3

    @pytest.mark.asyncio
    async def test_needs_two_messages(self):
        transport = FakeTransport("anything")
        service = _service(transport)
        session_id = service.create_session()
        service.store.add_message(session_id, Role.USER, "hello")

        assert await service.suggest_responses(session_id) == []
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_last_message_must_be_from_user(self):
        transport = FakeTransport("anything")
        service = _service(transport)
        session_id = service.create_session()
        await service.send_message(session_id, "hello")

        assert await service.suggest_responses(session_id) == []
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_failure_yields_empty_list(self):
        service = _service(FakeTransport(error=AuthError("bad key")))
        session_id = self._session_ending_with_user(service)

        assert await service.suggest_responses(session_id) == []

    @pytest.mark.asyncio
    async def test_unknown_session_yields_empty_list(self):
        assert await _service(FakeTransport()).suggest_responses("missing") == []


class TestChat:
    """Test chat operations."""

    @pytest.mark.asyncio
    async def test_send_message_returns_reply(self):
        service = _service(FakeTransport("Hi there"))
        session_id = service.create_session("Test")

        reply = await service.send_message(session_id, "hello")

        assert reply.role == Role.ASSISTANT
        assert reply.content == "Hi there"
        assert len(service.store.get_session(session_id).messages) == 2

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self):
        service = _service(FakeTransport())
        session_id = service.create_session()

        with pytest.raises(ValueError):
            await service.send_message(session_id, "")

    @pytest.mark.asyncio
    async def test_clear_and_delete(self):
        service = _service(FakeTransport("ok"))
        session_id = service.create_session(system_message="sys")
        await service.send_message(session_id, "hello")

        service.clear_history(session_id)
        assert len(service.store.get_session(session_id).messages) == 1

        service.delete_session(session_id)
        assert not service.store.has_session(session_id)

    @pytest.mark.asyncio
    async def test_close_closes_transport(self):
        transport = FakeTransport()
        service = _service(transport)

        await service.close()

        assert transport.closed


class TestFromConfig:
    """Test wiring from configuration."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_history_is_persisted(self):
        history_path = os.path.join(self.temp_dir, "history.db")
        config = AppConfig(chat=ChatConfig(history_path=history_path))

        service = CodeGenService.from_config(config)
        session_id = service.create_session("Saved")
        reloaded = CodeGenService.from_config(config)

        assert os.path.exists(history_path)
        assert reloaded.store.get_session(session_id).title == "Saved"
        assert isinstance(service.dispatcher.transport, OpenAITransport)

    def test_in_memory_history(self):
        history_path = os.path.join(self.temp_dir, "history.db")
        config = AppConfig(chat=ChatConfig(save_history=False, history_path=history_path))

        service = CodeGenService.from_config(config)
        service.create_session()

        assert not os.path.exists(history_path)

    def test_collaborators_follow_config(self):
        config = AppConfig(chat=ChatConfig(save_history=False))

        service = CodeGenService.from_config(config)

        assert service.dispatcher.gate.limits == config.resources
        assert service.dispatcher.retry_policy.max_retries == config.retry.max_retries
