"""
Answer generation grounded in retrieved context.
Builds injection-resistant prompts, answers greetings and help requests
directly, and calls the completion provider.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, AsyncIterator

from rag_tenant_qa.completion import (
    CompletionOptions,
    CompletionProvider,
    CompletionResult,
    Message,
    StreamChunk,
    TokenUsage,
)
from rag_tenant_qa.config import (
    BOUNDARY,
    GREETING_RESPONSE,
    HELP_RESPONSE,
    NO_CONTEXT_PROMPT_TEMPLATE,
    QA_PROMPT_TEMPLATE,
    SYSTEM_PROMPT,
    GeneratorConfig,
)
from rag_tenant_qa.retriever import RetrievalCandidate
from rag_tenant_qa.sanitize import (
    sanitize_document_content,
    sanitize_document_title,
    sanitize_user_input,
)
from rag_tenant_qa.summarizer import DocumentSummary

logger = logging.getLogger(__name__)

GREETING_PATTERN = re.compile(
    r"^(hi|hello|hey|good morning|good afternoon|good evening|howdy|greetings|what's up|sup)[\s!?.]*$",
    re.I,
)
HELP_PATTERN = re.compile(
    r"^(help|what can you do|how can you help|what are you|who are you|how does this work|what is this)[\s!?.]*$",
    re.I,
)

CONTEXT_SEPARATOR = "\n\n---\n\n"


@dataclass
class ContextItem:
    """One numbered entry of the prompt context, either a chunk or a document summary."""
    kind: str
    document_id: str
    document_title: str
    text: str
    chunk_id: Optional[str] = None
    chunk_index: Optional[int] = None
    confidence: float = 0.0
    source: Optional[str] = None

    @classmethod
    def from_candidate(cls, candidate: RetrievalCandidate) -> "ContextItem":
        chunk = candidate.chunk
        return cls(
            kind="chunk",
            document_id=chunk.document_id,
            document_title=chunk.document_title,
            text=chunk.text,
            chunk_id=chunk.chunk_id,
            chunk_index=chunk.chunk_index,
            confidence=candidate.confidence,
            source=chunk.source,
        )

    @classmethod
    def from_summary(cls, summary: DocumentSummary) -> "ContextItem":
        return cls(
            kind="summary",
            document_id=summary.document_id,
            document_title=summary.document_title,
            text=summary.summary,
            confidence=summary.confidence,
            source=summary.source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "document_id": self.document_id,
            "document_title": self.document_title,
            "chunk_id": self.chunk_id,
            "chunk_index": self.chunk_index,
            "confidence": self.confidence,
            "source": self.source,
        }


def build_context_items(candidates: List[RetrievalCandidate],
                        summaries: Optional[List[DocumentSummary]] = None) -> List[ContextItem]:
    """Summaries first, then chunks of documents that were not summarized."""
    summaries = summaries or []
    summarized = {s.document_id for s in summaries}
    items = [ContextItem.from_summary(s) for s in summaries]
    items.extend(
        ContextItem.from_candidate(c) for c in candidates if c.document_id not in summarized
    )
    return items


def format_context(items: List[ContextItem]) -> str:
    """Render context items as numbered [Document N] sections."""
    sections = []
    for number, item in enumerate(items, start=1):
        label = "Summary" if item.kind == "summary" else "Content"
        sections.append(
            f"[Document {number}]\n"
            f"Title: {sanitize_document_title(item.document_title)}\n"
            f"{label}: {sanitize_document_content(item.text)}"
        )
    return CONTEXT_SEPARATOR.join(sections)


def conversational_reply(question: str) -> Optional[str]:
    """Canned reply for greetings and help requests, None for real questions."""
    text = question.strip()
    if GREETING_PATTERN.match(text):
        return GREETING_RESPONSE
    if HELP_PATTERN.match(text):
        return HELP_RESPONSE
    return None


def build_messages(question: str, context_items: List[ContextItem]) -> List[Message]:
    """Assemble system and user messages for a grounded answer."""
    safe_question = sanitize_user_input(question)
    if context_items:
        user_prompt = QA_PROMPT_TEMPLATE.format(
            question_start=BOUNDARY["QUESTION_START"],
            question=safe_question,
            question_end=BOUNDARY["QUESTION_END"],
            context_start=BOUNDARY["CONTEXT_START"],
            context=format_context(context_items),
            context_end=BOUNDARY["CONTEXT_END"],
        )
    else:
        user_prompt = NO_CONTEXT_PROMPT_TEMPLATE.format(
            question_start=BOUNDARY["QUESTION_START"],
            question=safe_question,
            question_end=BOUNDARY["QUESTION_END"],
        )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


class AnswerGenerator:
    """Generates cited answers from context items."""

    def __init__(self,
                 provider: CompletionProvider,
                 config: Optional[GeneratorConfig] = None):
        self.provider = provider
        self.config = config or GeneratorConfig()

    def _options(self) -> CompletionOptions:
        return CompletionOptions(
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

    async def generate(self,
                       question: str,
                       context_items: List[ContextItem],
                       usage: Optional[TokenUsage] = None) -> CompletionResult:
        messages = build_messages(question, context_items)
        result = await self.provider.complete(messages, self._options())
        if usage is not None:
            usage.add_completion(result.usage)
        logger.debug(f"Generated answer ({len(result.text)} chars, finish={result.finish_reason})")
        return result

    def stream(self,
               question: str,
               context_items: List[ContextItem]) -> AsyncIterator[StreamChunk]:
        """Stream the answer; closing the returned iterator closes the provider stream."""
        messages = build_messages(question, context_items)
        return self.provider.stream_complete(messages, self._options())
