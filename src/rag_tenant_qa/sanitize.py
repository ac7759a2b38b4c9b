"""
Input sanitization for questions and document content placed into prompts.
Detects common prompt-injection patterns, escapes boundary-like sequences
and enforces length limits.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from rag_tenant_qa.errors import InputValidationError

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 2000
MAX_DOCUMENT_CONTENT_LENGTH = 10000
MAX_DOCUMENT_TITLE_LENGTH = 500

# Matches are logged for monitoring; they never block on their own.
INJECTION_PATTERNS = [
    # Instruction overrides
    re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+(instructions?|prompts?|rules?)", re.I),
    re.compile(r"disregard\s+(all\s+)?(previous|prior|above)", re.I),
    re.compile(r"forget\s+(everything|all|your)\s+(instructions?|rules?|training)", re.I),
    # Role manipulation
    re.compile(r"you\s+are\s+(now|actually|really)\s+(a|an|the)\b", re.I),
    re.compile(r"pretend\s+(to\s+be|you('re| are))", re.I),
    re.compile(r"act\s+as\s+(if\s+you('re| are)|a|an)\b", re.I),
    re.compile(r"roleplay\s+as", re.I),
    re.compile(r"your\s+new\s+(role|persona|identity)", re.I),
    # System prompt extraction
    re.compile(r"reveal\s+(your|the)\s+(system\s+)?prompt", re.I),
    re.compile(r"show\s+(me\s+)?(your|the)\s+(system\s+)?instructions", re.I),
    re.compile(r"what\s+(are|is)\s+your\s+(system\s+)?(prompt|instructions)", re.I),
    re.compile(r"(output|print)\s+(your|the)\s+(system\s+)?(prompt|instructions)", re.I),
    # Boundary attacks
    re.compile(r"<<<\s*(system|end|user|context)", re.I),
    re.compile(r">>>\s*(system|end|user|context)", re.I),
    re.compile(r"\[\[system\]\]", re.I),
    re.compile(r"##\s*system", re.I),
    # Code execution
    re.compile(r"exec(ute)?\s*\(", re.I),
    re.compile(r"eval\s*\(", re.I),
    re.compile(r"import\s+os", re.I),
    re.compile(r"subprocess", re.I),
    re.compile(r"__import__", re.I),
    # Jailbreaks
    re.compile(r"do\s+anything\s+now", re.I),
    re.compile(r"dan\s+mode", re.I),
    re.compile(r"jailbreak", re.I),
    re.compile(r"bypass\s+(safety|filter|restrictions)", re.I),
    re.compile(r"unlock\s+(your|full)\s+(potential|capabilities)", re.I),
]

ESCAPE_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"<<<+"), "< < <"),
    (re.compile(r">>>+"), "> > >"),
    (re.compile(r"^#{1,6}\s*(system|instruction|prompt|rule)", re.I | re.M), r"(heading) \1"),
    (re.compile(r"</?system>", re.I), "[system]"),
    (re.compile(r"</?instruction>", re.I), "[instruction]"),
    (re.compile(r"</?prompt>", re.I), "[prompt]"),
    # Control characters other than newline and tab
    (re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]"), ""),
    (re.compile(r"[ \t]{10,}"), "    "),
    (re.compile(r"\n{5,}"), "\n\n\n"),
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


@dataclass
class SanitizeResult:
    """Outcome of sanitizing one piece of text."""
    sanitized: str
    original: str
    truncated: bool = False
    detected_patterns: List[str] = field(default_factory=list)

    @property
    def injection_detected(self) -> bool:
        return bool(self.detected_patterns)


def detect_injection_patterns(text: str) -> List[str]:
    """Return the source of every injection pattern found in text."""
    return [pattern.pattern for pattern in INJECTION_PATTERNS if pattern.search(text)]


def apply_escape_patterns(text: str) -> str:
    for pattern, replacement in ESCAPE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def truncate_text(text: str, max_length: int) -> Tuple[str, bool]:
    """Truncate to max_length, breaking at a word boundary when one is close."""
    if len(text) <= max_length:
        return text, False

    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.8:
        truncated = truncated[:last_space]
    return truncated + "...", True


def sanitize(text: str,
             max_length: int = MAX_QUESTION_LENGTH,
             detect_injection: bool = True,
             escape: bool = True,
             log_detections: bool = True) -> SanitizeResult:
    """Run detection, escaping and truncation over text."""
    original = text
    sanitized = text.strip()
    detected = []

    # Detection runs on the unmodified input
    if detect_injection:
        detected = detect_injection_patterns(sanitized)
        if detected and log_detections:
            logger.warning(
                f"Potential injection patterns detected ({len(detected)}): {sanitized[:100]!r}"
            )

    if escape:
        sanitized = apply_escape_patterns(sanitized)

    sanitized, truncated = truncate_text(sanitized, max_length)
    return SanitizeResult(
        sanitized=sanitized,
        original=original,
        truncated=truncated,
        detected_patterns=detected,
    )


def sanitize_user_input(question: str) -> str:
    return sanitize(question, max_length=MAX_QUESTION_LENGTH).sanitized


def sanitize_document_content(content: str) -> str:
    return sanitize(content, max_length=MAX_DOCUMENT_CONTENT_LENGTH).sanitized


def sanitize_document_title(title: str) -> str:
    return sanitize(
        title,
        max_length=MAX_DOCUMENT_TITLE_LENGTH,
        detect_injection=False,
        log_detections=False,
    ).sanitized


def check_input(question, max_length: int = MAX_QUESTION_LENGTH) -> Optional[str]:
    """
    Decide whether a question must be rejected outright.

    Returns the rejection reason, or None when the question may proceed.
    Injection matches are not a reason to reject.
    """
    if not isinstance(question, str):
        return "Question must be a string"
    if not question.strip():
        return "Question cannot be empty"
    if len(question) > max_length:
        return f"Question exceeds maximum length of {max_length} characters"
    if not _CONTROL_CHARS.sub("", question).strip():
        return "Question contains no readable text"
    return None


def validate_question(question, max_length: int = MAX_QUESTION_LENGTH) -> str:
    """Raise InputValidationError for blocked input, else return the stripped question."""
    reason = check_input(question, max_length)
    if reason is not None:
        raise InputValidationError(reason)

    detected = detect_injection_patterns(question)
    if detected:
        logger.warning(f"Question matched {len(detected)} injection pattern(s); continuing")
    return question.strip()
