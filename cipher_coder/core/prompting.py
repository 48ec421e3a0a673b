"""
Prompt preparation.

Turns user text and editor context into model-ready prompts: redacts
secrets, detects the target language, adds code context, and formats chat
history for local model families. Also builds the task prompts for
explaining, improving and completing code and for follow-up suggestions.
"""

import re
from typing import List, Optional, Tuple

from .models import CodeContext, GenerationParams, Request, Role

LANGUAGE_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(javascript|nodejs|js)\b", re.I), "javascript"),
    (re.compile(r"\b(typescript|ts)\b", re.I), "typescript"),
    (re.compile(r"\b(python|py)\b", re.I), "python"),
    (re.compile(r"\bjava\b", re.I), "java"),
    (re.compile(r"(c\+\+|\bcpp\b)", re.I), "cpp"),
    (re.compile(r"(c#|\bcsharp\b)", re.I), "csharp"),
    (re.compile(r"\b(golang|go)\b", re.I), "go"),
    (re.compile(r"\bruby\b", re.I), "ruby"),
    (re.compile(r"\bphp\b", re.I), "php"),
    (re.compile(r"\bswift\b", re.I), "swift"),
    (re.compile(r"\brust\b", re.I), "rust"),
    (re.compile(r"\bkotlin\b", re.I), "kotlin"),
    (re.compile(r"\bscala\b", re.I), "scala"),
    (re.compile(r"\bhtml\b", re.I), "html"),
    (re.compile(r"\bcss\b", re.I), "css"),
    (re.compile(r"\bsql\b", re.I), "sql"),
    (re.compile(r"\bjson\b", re.I), "json"),
    (re.compile(r"\b(yaml|yml)\b", re.I), "yaml"),
    (re.compile(r"\b(markdown|md)\b", re.I), "markdown"),
    (re.compile(r"\b(shell|bash|sh)\b", re.I), "shell"),
]

_SECRET_PATTERNS = [
    (re.compile(r"api[-_]?key\s*[=:]\s*[\w\-.]+", re.I), "API_KEY=REDACTED"),
    (re.compile(r"token\s*[=:]\s*[\w\-.]+", re.I), "TOKEN=REDACTED"),
    (re.compile(r"password\s*[=:]\s*[\w\-.]+", re.I), "PASSWORD=REDACTED"),
    (re.compile(r"secret\s*[=:]\s*[\w\-.]+", re.I), "SECRET=REDACTED"),
]

_CODE_KEYWORDS = (
    "code", "function", "class", "method",
    "write a", "create a", "implement", "generate",
    "script", "program", "algorithm",
)
_CODE_PATTERN = re.compile(r"function\s*\(|class\s+\w+|def\s+\w+\s*\(|import\s+")

CODE_TEMPERATURE = 0.3
CODE_MAX_TOKENS = 1024
CHAT_TEMPERATURE = 0.7

MAX_SUGGESTIONS = 3
SUGGESTION_MAX_TOKENS = 150
SUGGESTION_PROMPT = (
    f"Based on the conversation, suggest {MAX_SUGGESTIONS} brief follow-up messages the user "
    "might want to send. Only output the suggestions, one per line, without numbering "
    "or extra text. Each suggestion should be short and to the point."
)


def sanitize_prompt(prompt: str) -> str:
    """Redact credentials and normalize whitespace."""
    sanitized = prompt.strip()
    for pattern, replacement in _SECRET_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return re.sub(r"\s+", " ", sanitized)


def detect_language(prompt: str) -> Optional[str]:
    """Guess the programming language a prompt is about.

    Returns:
        Language name, or None if nothing matches
    """
    for pattern, language in LANGUAGE_PATTERNS:
        if pattern.search(prompt):
            return language

    if re.search(r"function\s*\(|\bconst\b|\blet\b|\bvar\b|=>", prompt):
        return "javascript"
    if re.search(r"def\s+\w+\s*\(|import\s+\w+|from\s+\w+\s+import", prompt):
        return "python"
    if re.search(r"public\s+(static\s+)?(void|class)", prompt):
        return "java"
    if re.search(r"<[^>]+>|</\w+>", prompt):
        return "html"
    return None


def enhance_prompt(prompt: str, context: Optional[CodeContext]) -> str:
    """Add language, surrounding code and project hints to a prompt."""
    if context is None:
        return prompt

    language = context.language
    enhanced = prompt
    if language and language != "plaintext":
        enhanced = f"Using {language}, {enhanced}"

    if context.surrounding_code:
        enhanced += (
            f"\n\nHere is the relevant code context:\n```{language}\n"
            f"{context.surrounding_code}\n```"
        )

    if context.file_path:
        enhanced += f"\n\nThis code is for a file with path: {context.file_path}"
        if "." in context.file_path:
            enhanced += f" ({context.file_path.rsplit('.', 1)[-1]} file)"

    metadata = context.project_metadata or {}
    if metadata.get("dependencies"):
        enhanced += f"\n\nProject dependencies: {metadata['dependencies']}"
    if metadata.get("frameworks"):
        enhanced += f"\n\nFrameworks used: {metadata['frameworks']}"

    return enhanced


def build_code_context(
    prompt: str,
    language: Optional[str] = None,
    file_context: Optional[str] = None,
    file_path: Optional[str] = None,
) -> CodeContext:
    """Build a CodeContext, detecting the language when not given."""
    return CodeContext(
        language=language or detect_language(prompt) or "plaintext",
        surrounding_code=file_context,
        file_path=file_path,
    )


def is_code_request(message: str) -> bool:
    """Whether a chat message is asking for code."""
    lowered = message.lower()
    if any(keyword in lowered for keyword in _CODE_KEYWORDS):
        return True
    return bool(_CODE_PATTERN.search(message))


def chat_params(message: str, default_max_tokens: Optional[int] = None) -> GenerationParams:
    """Sampling parameters for a chat turn.

    Code requests get a lower temperature and a larger token budget.
    """
    if is_code_request(message):
        return GenerationParams(temperature=CODE_TEMPERATURE, max_tokens=CODE_MAX_TOKENS)
    return GenerationParams(temperature=CHAT_TEMPERATURE, max_tokens=default_max_tokens)


def _format_inst(request: Request, opening: str) -> str:
    formatted = opening
    for message in request.chat_turns():
        if message.role == Role.USER:
            formatted += f"{message.content} [/INST] "
        elif message.role == Role.ASSISTANT:
            formatted += f"{message.content} </s><s>[INST] "
    # The last turn is always the user's prompt
    return formatted.rstrip()


def format_local_prompt(request: Request, model_type: str = "unknown") -> str:
    """Render a request as a single prompt string for a local model.

    Args:
        request: The request to render
        model_type: Model family (llama, llama2, mistral, or anything else)

    Returns:
        Prompt text in the family's chat format
    """
    family = (model_type or "unknown").lower()

    if not request.is_chat:
        if family in ("llama", "llama2", "mistral"):
            return f"<s>[INST] {request.prompt} [/INST]"
        return request.prompt

    if family in ("llama", "llama2"):
        if request.system_message:
            opening = f"<s>[INST] <<SYS>>\n{request.system_message}\n<</SYS>>\n\n"
        else:
            opening = "<s>[INST] "
        return _format_inst(request, opening)

    if family == "mistral":
        if request.system_message:
            opening = f"<s>[INST] {request.system_message}\n\n"
        else:
            opening = "<s>[INST] "
        return _format_inst(request, opening)

    formatted = f"{request.system_message}\n\n" if request.system_message else ""
    for message in request.chat_turns():
        if message.role == Role.SYSTEM:
            continue
        formatted += f"{message.role.value.capitalize()}: {message.content}\n"
    return formatted + "Assistant: "


def build_explanation_prompt(code: str, language: Optional[str] = None) -> str:
    """Prompt asking for a step-by-step explanation of ``code``."""
    language = language or detect_language(code) or "code"
    return (
        f"Please explain the following {language} code in detail, breaking down "
        f"what each part does:\n\n```{language}\n{code}\n```\n\n"
        "Provide a clear explanation of:\n"
        "1. What the code does overall\n"
        "2. How it works step by step\n"
        "3. Key functions or components\n"
        "4. Any notable patterns or techniques used"
    )


def build_improvement_prompt(code: str, description: str, language: str) -> str:
    """Prompt asking for ``code`` rewritten according to ``description``."""
    return (
        f"I need to improve this {language} code. Here's the existing code:\n\n"
        f"```{language}\n{code}\n```\n\n"
        f"I want to improve it by: {description}\n\n"
        "Please provide the improved code with the requested changes. "
        "Your response should include only the complete improved code."
    )


def build_completion_prompt(
    partial_code: str,
    language: str,
    file_context: Optional[str] = None,
) -> str:
    """Prompt asking the model to continue ``partial_code``."""
    prompt = f"Complete the following {language} code:\n\n```{language}\n{partial_code}\n```"
    if file_context:
        prompt += (
            f"\n\nHere is additional context from the file:\n"
            f"```{language}\n{file_context}\n```"
        )
    prompt += (
        "\n\nComplete the code above starting from where it cuts off. Make sure "
        f"your completion is syntactically correct and follows best practices for {language}."
    )
    return prompt


def parse_suggestions(text: str, limit: int = MAX_SUGGESTIONS) -> List[str]:
    """Split a suggestion reply into at most ``limit`` non-empty lines."""
    lines = (line.strip() for line in text.splitlines())
    return [line for line in lines if line][:limit]
