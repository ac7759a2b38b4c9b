"""
Document summarization for broad questions.

Questions such as "summarize the annual report" are answered better from
per-document summaries than from isolated chunks. Each retrieved document is
summarized with a bounded number of concurrent completion calls.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

from rag_tenant_qa.completion import CompletionOptions, CompletionProvider, TokenUsage
from rag_tenant_qa.config import SUMMARY_PROMPT_TEMPLATE, SUMMARY_SYSTEM_PROMPT, SummarizerConfig
from rag_tenant_qa.retriever import RetrievalCandidate
from rag_tenant_qa.sanitize import sanitize_document_content, sanitize_document_title
from rag_tenant_qa.store import ChunkStore

logger = logging.getLogger(__name__)

BROAD_QUESTION_PATTERNS = [
    re.compile(pattern, re.I)
    for pattern in (
        r"summarize",
        r"overview",
        r"what.*overall",
        r"tell me about",
        r"explain.*company",
        r"how.*perform",
        r"financial.*performance",
        r"key.*point",
        r"main.*takeaway",
        r"high.*level",
        r"in general",
        r"compare",
        r"trend",
        r"across.*year",
        r"year.*over.*year",
    )
]


def is_broad_question(question: str) -> bool:
    """True when the question asks for an overview rather than a specific fact."""
    return any(pattern.search(question) for pattern in BROAD_QUESTION_PATTERNS)


@dataclass
class DocumentSummary:
    """Question-focused summary of one document."""
    document_id: str
    document_title: str
    summary: str
    chunk_count: int
    confidence: float
    fused_rank: int
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "document_title": self.document_title,
            "summary": self.summary,
            "chunk_count": self.chunk_count,
            "confidence": self.confidence,
            "source": self.source,
        }


class DocumentSummarizer:
    """Summarizes the documents behind a set of retrieval candidates."""

    def __init__(self,
                 provider: CompletionProvider,
                 store: ChunkStore,
                 config: Optional[SummarizerConfig] = None):
        self.provider = provider
        self.store = store
        self.config = config or SummarizerConfig()

    @staticmethod
    def group_by_document(candidates: List[RetrievalCandidate]) -> Dict[str, List[RetrievalCandidate]]:
        """Group candidates by document, documents in order of their best candidate."""
        groups: Dict[str, List[RetrievalCandidate]] = {}
        for candidate in sorted(candidates, key=lambda c: c.fused_rank):
            groups.setdefault(candidate.document_id, []).append(candidate)
        return groups

    async def summarize(self,
                        tenant_id: str,
                        question: str,
                        candidates: List[RetrievalCandidate],
                        usage: Optional[TokenUsage] = None) -> List[DocumentSummary]:
        """
        Summarize up to max_documents documents in parallel.

        A failure for one document drops that document only. Summaries are
        ordered by confidence, best first.
        """
        groups = self.group_by_document(candidates)
        documents = list(groups.items())[: self.config.max_documents]
        if not documents:
            return []

        semaphore = asyncio.Semaphore(self.config.max_concurrent)

        async def run(document_id: str, group: List[RetrievalCandidate]) -> Optional[DocumentSummary]:
            async with semaphore:
                try:
                    return await self._summarize_document(tenant_id, question, document_id, group, usage)
                except Exception as e:
                    logger.warning(f"Failed to summarize document {document_id}: {e}")
                    return None

        results = await asyncio.gather(*(run(doc_id, group) for doc_id, group in documents))
        summaries = [s for s in results if s is not None]
        summaries.sort(key=lambda s: (-s.confidence, s.fused_rank))

        logger.info(f"Summarized {len(summaries)}/{len(documents)} documents")
        return summaries

    async def _summarize_document(self,
                                  tenant_id: str,
                                  question: str,
                                  document_id: str,
                                  group: List[RetrievalCandidate],
                                  usage: Optional[TokenUsage]) -> Optional[DocumentSummary]:
        first = group[0].chunk
        content = await self.store.get_document_full_text(tenant_id, document_id)
        if not content.strip():
            content = "\n\n".join(c.chunk.text for c in sorted(group, key=lambda c: c.chunk.chunk_index))
        content = content[: self.config.max_input_chars]

        prompt = SUMMARY_PROMPT_TEMPLATE.format(
            question=question,
            title=sanitize_document_title(first.document_title),
            content=sanitize_document_content(content),
        )
        messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        options = CompletionOptions(
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

        result = await self.provider.complete(messages, options)
        if usage is not None:
            usage.add_completion(result.usage)

        if not result.text.strip():
            logger.warning(f"Empty summary for document {document_id}")
            return None

        return DocumentSummary(
            document_id=document_id,
            document_title=first.document_title,
            summary=result.text.strip(),
            chunk_count=len(group),
            confidence=max(c.confidence for c in group),
            fused_rank=group[0].fused_rank,
            source=first.source,
        )
