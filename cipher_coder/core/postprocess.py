"""
Post-processing of model output.

Extracts code from free-form responses, runs a best-effort structural check,
and scans for risky constructs. Findings are advisory: nothing here ever
rejects a response; callers decide whether to display or insert the code.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)


class FindingKind(Enum):
    """Origin of a finding."""
    EXTRACTION = "extraction"
    STRUCTURE = "structure"
    SECURITY = "security"


@dataclass(frozen=True)
class Finding:
    """An advisory note attached to processed output."""
    kind: FindingKind
    code: str
    message: str


@dataclass(frozen=True)
class ProcessedResponse:
    """Result of processing raw model output."""
    code: str
    language: Optional[str]
    is_code: bool
    findings: Tuple[Finding, ...] = ()

    @property
    def valid(self) -> bool:
        """True when no structural problems were found."""
        return not any(f.kind == FindingKind.STRUCTURE for f in self.findings)

    @property
    def security_findings(self) -> List[Finding]:
        return [f for f in self.findings if f.kind == FindingKind.SECURITY]


CODE_BLOCK_RE = re.compile(r"```(?:([\w+#.-]+)[ \t]*\r?\n|[ \t]*\n?)([\s\S]*?)```")

CODE_INDICATORS = [
    re.compile(r"function\s+\w+\s*\(", re.I),
    re.compile(r"class\s+\w+", re.I),
    re.compile(r"def\s+\w+\s*\(", re.I),
    re.compile(r"if\s*\(.+\)\s*\{", re.I),
    re.compile(r"for\s*\(.+\)\s*\{", re.I),
    re.compile(r"while\s*\(.+\)\s*\{", re.I),
    re.compile(r"import\s+.+\s+from", re.I),
    re.compile(r"^\s*(from\s+[\w.]+\s+)?import\s+[\w.]+", re.M),
    re.compile(r"export\s+(default\s+)?(function|class|const|let|var)", re.I),
    re.compile(r"const\s+\w+\s*=", re.I),
    re.compile(r"let\s+\w+\s*=", re.I),
    re.compile(r"var\s+\w+\s*=", re.I),
    re.compile(r"return\s+.+;", re.I),
    re.compile(r"<\w+(\s+\w+=\".*?\")*\s*>", re.I),
]

# Prose formats have no delimiter discipline worth checking
UNSTRUCTURED_LANGUAGES: FrozenSet[str] = frozenset({"markdown", "md", "text", "plaintext", "txt"})

DELIMITERS = [
    ("{", "}", "braces"),
    ("(", ")", "parentheses"),
    ("[", "]", "brackets"),
]

JS_LANGUAGES = frozenset({"javascript", "js", "typescript", "ts", "jsx", "tsx", "html"})
PY_LANGUAGES = frozenset({"python", "py"})


@dataclass(frozen=True)
class SecurityRule:
    code: str
    pattern: re.Pattern
    message: str
    languages: Optional[FrozenSet[str]] = None

    def applies_to(self, language: Optional[str]) -> bool:
        return self.languages is None or language is None or language in self.languages


SECURITY_RULES = [
    SecurityRule(
        "dynamic_eval",
        re.compile(r"\beval\s*\("),
        "Use of eval() which can lead to code injection vulnerabilities",
    ),
    SecurityRule(
        "dynamic_eval",
        re.compile(r"\bexec\s*\("),
        "Use of exec() which can lead to code injection vulnerabilities",
        PY_LANGUAGES,
    ),
    SecurityRule(
        "dynamic_eval",
        re.compile(r"\bnew\s+Function\s*\("),
        "Use of new Function() which can lead to code injection vulnerabilities",
        JS_LANGUAGES,
    ),
    SecurityRule(
        "html_injection",
        re.compile(r"\.(innerHTML|outerHTML)\s*=(?!=)"),
        "Assignment to innerHTML/outerHTML which can lead to XSS vulnerabilities",
        JS_LANGUAGES,
    ),
    SecurityRule(
        "html_injection",
        re.compile(r"document\.write(ln)?\s*\("),
        "Use of document.write() which can lead to XSS vulnerabilities",
        JS_LANGUAGES,
    ),
    SecurityRule(
        "html_injection",
        re.compile(r"\.insertAdjacentHTML\s*\(|dangerouslySetInnerHTML"),
        "Raw HTML insertion which can lead to XSS vulnerabilities",
        JS_LANGUAGES,
    ),
    SecurityRule(
        "shell_injection",
        re.compile(r"subprocess\.\w+\([^)]*shell\s*=\s*True"),
        "Use of shell=True in subprocess which can lead to command injection vulnerabilities",
        PY_LANGUAGES,
    ),
    SecurityRule(
        "shell_injection",
        re.compile(r"\bos\.(system|popen)\s*\("),
        "Use of os.system()/os.popen() which can lead to command injection vulnerabilities",
        PY_LANGUAGES,
    ),
    SecurityRule(
        "shell_injection",
        re.compile(r"child_process\.exec(Sync)?\s*\(|\bexecSync\s*\("),
        "Use of child_process.exec which can lead to command injection vulnerabilities",
        JS_LANGUAGES,
    ),
    SecurityRule(
        "hardcoded_credentials",
        re.compile(
            r"password\s*[=:]\s*['\"][^'\"]{3,}['\"]"
            r"|api[-_]?key\s*[=:]\s*['\"][^'\"]{10,}['\"]"
            r"|secret\s*[=:]\s*['\"][^'\"]{10,}['\"]"
            r"|token\s*[=:]\s*['\"][^'\"]{10,}['\"]",
            re.I,
        ),
        "Potential hardcoded credentials detected",
    ),
]


def _normalize_language(language: Optional[str]) -> Optional[str]:
    return language.strip().lower() if language and language.strip() else None


def looks_like_code(text: str) -> bool:
    """Heuristically decide whether unfenced text is source code."""
    if any(regex.search(text) for regex in CODE_INDICATORS):
        return True

    lines = [line for line in text.split("\n") if line.strip()]
    if len(lines) <= 3:
        return False

    semicolon_lines = sum(1 for line in lines if line.strip().endswith(";"))
    if semicolon_lines / len(lines) > 0.3:
        return True

    indented_lines = sum(1 for line in lines if line.startswith(("  ", "\t")))
    return indented_lines / len(lines) > 0.3


def validate_structure(code: str, language: Optional[str] = None) -> List[Finding]:
    """Check delimiter balance and quote parity.

    This is not a parser: strings and comments are not skipped.
    """
    findings: List[Finding] = []
    language = _normalize_language(language)
    if language in UNSTRUCTURED_LANGUAGES:
        return findings

    for opening, closing, name in DELIMITERS:
        opened = code.count(opening)
        closed = code.count(closing)
        if opened != closed:
            findings.append(Finding(
                FindingKind.STRUCTURE,
                f"unbalanced_{name}",
                f"Unbalanced {name}: {opened} opening vs {closed} closing",
            ))

    for quote, name in (("'", "single"), ('"', "double")):
        count = code.count(quote)
        if count % 2:
            findings.append(Finding(
                FindingKind.STRUCTURE,
                f"odd_{name}_quotes",
                f"Odd number of {name} quotes: {count}",
            ))

    return findings


def scan_security(code: str, language: Optional[str] = None) -> List[Finding]:
    """Flag risky constructs; advisory only."""
    language = _normalize_language(language)
    findings: List[Finding] = []
    seen = set()
    for rule in SECURITY_RULES:
        if not rule.applies_to(language) or not rule.pattern.search(code):
            continue
        if rule.message in seen:
            continue
        seen.add(rule.message)
        findings.append(Finding(FindingKind.SECURITY, rule.code, rule.message))
    return findings


class ResponseProcessor:
    """Extracts, validates and scans code in model output."""

    def __init__(self, check_structure: bool = True, check_security: bool = True):
        self.check_structure = check_structure
        self.check_security = check_security

    def extract(self, raw_text: str, language: Optional[str] = None) -> ProcessedResponse:
        """Pull code out of raw model output without validating it.

        Args:
            raw_text: Model output
            language: Expected language, used when the fence has no tag

        Returns:
            ProcessedResponse with only extraction findings
        """
        blocks = CODE_BLOCK_RE.findall(raw_text)
        if blocks:
            tag, body = blocks[0]
            findings: Tuple[Finding, ...] = ()
            if len(blocks) > 1:
                findings = (Finding(
                    FindingKind.EXTRACTION,
                    "multiple_code_blocks",
                    f"Found {len(blocks)} code blocks; using the first",
                ),)
            return ProcessedResponse(
                code=body.strip("\n").rstrip(),
                language=tag or language,
                is_code=True,
                findings=findings,
            )

        if looks_like_code(raw_text):
            return ProcessedResponse(code=raw_text.strip(), language=language, is_code=True)

        return ProcessedResponse(code=raw_text, language=language, is_code=False)

    def process(self, raw_text: str, language: Optional[str] = None) -> ProcessedResponse:
        """Extract code, then attach structural and security findings."""
        extracted = self.extract(raw_text, language)
        if not extracted.is_code:
            return extracted

        findings = list(extracted.findings)
        if self.check_structure:
            structural = validate_structure(extracted.code, extracted.language)
            if structural:
                logger.warning(
                    "Code validation failed: %s", "; ".join(f.message for f in structural)
                )
            findings.extend(structural)
        if self.check_security:
            security = scan_security(extracted.code, extracted.language)
            if security:
                logger.warning(
                    "Security issues found: %s", "; ".join(f.message for f in security)
                )
            findings.extend(security)

        return ProcessedResponse(
            code=extracted.code,
            language=extracted.language,
            is_code=True,
            findings=tuple(findings),
        )
