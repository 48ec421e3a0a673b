"""
Unit tests for prompt preparation.
"""

from cipher_coder.core.models import CodeContext, ConversationMessage, Request, Role
from cipher_coder.core.prompting import (
    CHAT_TEMPERATURE,
    CODE_MAX_TOKENS,
    CODE_TEMPERATURE,
    build_code_context,
    build_completion_prompt,
    build_explanation_prompt,
    build_improvement_prompt,
    chat_params,
    detect_language,
    enhance_prompt,
    format_local_prompt,
    is_code_request,
    parse_suggestions,
    sanitize_prompt,
)


class TestSanitize:
    """Test prompt sanitization."""

    def test_redacts_credentials(self):
        prompt = "Use api_key=sk-abc123 and password: hunter2 to log in"

        sanitized = sanitize_prompt(prompt)

        assert "sk-abc123" not in sanitized
        assert "hunter2" not in sanitized
        assert "API_KEY=REDACTED" in sanitized
        assert "PASSWORD=REDACTED" in sanitized

    def test_collapses_whitespace(self):
        assert sanitize_prompt("  write\n\n a   function ") == "write a function"


class TestLanguageDetection:
    """Test language detection from prompts."""

    def test_keyword(self):
        assert detect_language("Write a Python function to sort") == "python"
        assert detect_language("a TypeScript interface for users") == "typescript"
        assert detect_language("convert this to C++") == "cpp"

    def test_syntax_heuristic(self):
        assert detect_language("fix: const add = (a, b) => a + b") == "javascript"
        assert detect_language("def area(r): return 3.14 * r * r") == "python"

    def test_unknown(self):
        assert detect_language("make it faster please") is None

    def test_build_code_context_defaults_to_plaintext(self):
        context = build_code_context("make it faster please")

        assert context.language == "plaintext"


class TestEnhancePrompt:
    """Test code context enhancement."""

    def test_no_context(self):
        assert enhance_prompt("sort numbers", None) == "sort numbers"

    def test_full_context(self):
        context = CodeContext(
            language="python",
            surrounding_code="import math",
            file_path="src/geometry.py",
            project_metadata={"frameworks": "fastapi"},
        )

        enhanced = enhance_prompt("compute an area", context)

        assert enhanced.startswith("Using python, compute an area")
        assert "```python\nimport math\n```" in enhanced
        assert "src/geometry.py (py file)" in enhanced
        assert "Frameworks used: fastapi" in enhanced

    def test_plaintext_is_not_announced(self):
        enhanced = enhance_prompt("do it", CodeContext(language="plaintext"))

        assert enhanced == "do it"


class TestChatParams:
    """Test code request detection and sampling choice."""

    def test_code_request(self):
        assert is_code_request("Can you implement a cache?") is True
        assert is_code_request("what does def foo(): do") is True

    def test_plain_chat(self):
        assert is_code_request("How are you today?") is False

    def test_code_request_params(self):
        params = chat_params("write a function that adds two numbers")

        assert params.temperature == CODE_TEMPERATURE
        assert params.max_tokens == CODE_MAX_TOKENS

    def test_chat_params(self):
        params = chat_params("How are you today?", default_max_tokens=256)

        assert params.temperature == CHAT_TEMPERATURE
        assert params.max_tokens == 256


class TestTaskPrompts:
    """Test prompts for explaining, improving and completing code."""

    def test_explanation_detects_language(self):
        prompt = build_explanation_prompt("def f():\n    return 1")

        assert prompt.startswith("Please explain the following python code in detail")
        assert "```python\ndef f():\n    return 1\n```" in prompt
        assert "4. Any notable patterns or techniques used" in prompt

    def test_explanation_of_unknown_code(self):
        prompt = build_explanation_prompt("x")

        assert "the following code in detail" in prompt
        assert "```code\nx\n```" in prompt

    def test_improvement_prompt(self):
        prompt = build_improvement_prompt("let x = 1", "use const", "javascript")

        assert prompt.startswith("I need to improve this javascript code.")
        assert "```javascript\nlet x = 1\n```" in prompt
        assert "I want to improve it by: use const" in prompt
        assert prompt.endswith("include only the complete improved code.")

    def test_completion_prompt_without_context(self):
        prompt = build_completion_prompt("fn main() {", "rust")

        assert prompt.startswith("Complete the following rust code:\n\n```rust\nfn main() {\n```")
        assert "additional context" not in prompt
        assert prompt.endswith("follows best practices for rust.")

    def test_completion_prompt_with_context(self):
        prompt = build_completion_prompt("fn main() {", "rust", "use std::io;")

        assert "Here is additional context from the file:\n```rust\nuse std::io;\n```" in prompt


class TestSuggestionParsing:
    """Test splitting suggestion replies."""

    def test_blank_lines_dropped_and_trimmed(self):
        assert parse_suggestions("  one \n\n two\n") == ["one", "two"]

    def test_at_most_three(self):
        assert parse_suggestions("a\nb\nc\nd") == ["a", "b", "c"]

    def test_empty_reply(self):
        assert parse_suggestions("") == []


class TestLocalPromptFormat:
    """Test local prompt formatting per model family."""

    def _chat_request(self):
        return Request(
            prompt="And in Go?",
            conversation_history=(
                ConversationMessage(Role.USER, "Reverse a string in Python"),
                ConversationMessage(Role.ASSISTANT, "s[::-1]"),
            ),
            system_message="You are a coding assistant.",
        )

    def test_plain_request_generic(self):
        assert format_local_prompt(Request(prompt="hello"), "phi") == "hello"

    def test_plain_request_llama(self):
        assert format_local_prompt(Request(prompt="hello"), "llama") == "<s>[INST] hello [/INST]"

    def test_llama_chat(self):
        formatted = format_local_prompt(self._chat_request(), "llama2")

        assert formatted == (
            "<s>[INST] <<SYS>>\nYou are a coding assistant.\n<</SYS>>\n\n"
            "Reverse a string in Python [/INST] s[::-1] </s><s>[INST] And in Go? [/INST]"
        )

    def test_mistral_chat(self):
        formatted = format_local_prompt(self._chat_request(), "mistral")

        assert formatted.startswith("<s>[INST] You are a coding assistant.\n\n")
        assert formatted.endswith("And in Go? [/INST]")

    def test_generic_chat(self):
        formatted = format_local_prompt(self._chat_request(), "unknown")

        assert formatted == (
            "You are a coding assistant.\n\n"
            "User: Reverse a string in Python\n"
            "Assistant: s[::-1]\n"
            "User: And in Go?\n"
            "Assistant: "
        )
