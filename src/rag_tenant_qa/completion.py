"""
Completion providers for text generation.
Defines the provider interface used by the pipeline plus OpenAI and offline mock backends.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, AsyncIterator

from openai import AsyncOpenAI, OpenAIError

from rag_tenant_qa.config import GeneratorConfig, BOUNDARY
from rag_tenant_qa.errors import ProviderError

logger = logging.getLogger(__name__)

Message = Dict[str, str]


@dataclass
class CompletionOptions:
    """Per-call generation parameters."""
    max_tokens: int = 1024
    temperature: float = 0.3
    model: Optional[str] = None


@dataclass
class CompletionUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class TokenUsage:
    """Tokens consumed by one request, accumulated across every provider call."""
    embedding: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.embedding + self.completion

    def add_completion(self, usage: Optional[CompletionUsage]) -> None:
        if usage is not None:
            self.completion += usage.total_tokens

    def to_dict(self) -> Dict[str, int]:
        return {"embedding": self.embedding, "completion": self.completion, "total": self.total}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenUsage":
        return cls(embedding=int(data.get("embedding", 0)), completion=int(data.get("completion", 0)))


@dataclass
class CompletionResult:
    """Result of a non-streaming completion."""
    text: str
    finish_reason: str = "stop"
    usage: CompletionUsage = field(default_factory=CompletionUsage)


@dataclass
class StreamChunk:
    """One streamed piece of output. The final chunk may carry usage only."""
    text: str = ""
    usage: Optional[CompletionUsage] = None


class CompletionProvider(ABC):
    """Interface every completion backend implements."""

    name = "base"

    @abstractmethod
    async def complete(self,
                       messages: List[Message],
                       options: Optional[CompletionOptions] = None) -> CompletionResult:
        """Generate a full completion."""

    @abstractmethod
    def stream_complete(self,
                        messages: List[Message],
                        options: Optional[CompletionOptions] = None) -> AsyncIterator[StreamChunk]:
        """Generate a completion as an async sequence of chunks."""

    async def close(self) -> None:
        """Release network resources."""


class OpenAICompletionProvider(CompletionProvider):
    """Chat completions through the OpenAI API."""

    name = "openai"

    def __init__(self, config: Optional[GeneratorConfig] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or GeneratorConfig()
        if client is None:
            if not self.config.openai_api_key:
                raise ValueError("OpenAI API key not provided")
            # Retries are left to the caller; a failed call is a pipeline error.
            client = AsyncOpenAI(
                api_key=self.config.openai_api_key,
                base_url=self.config.openai_base_url,
                timeout=self.config.timeout,
                max_retries=0,
            )
        self.client = client
        logger.info(f"OpenAI completion provider initialized with model: {self.config.openai_model}")

    def _request_kwargs(self, messages: List[Message], options: CompletionOptions) -> Dict[str, Any]:
        return {
            "model": options.model or self.config.openai_model,
            "messages": messages,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }

    @staticmethod
    def _usage(raw) -> CompletionUsage:
        if raw is None:
            return CompletionUsage()
        return CompletionUsage(
            prompt_tokens=raw.prompt_tokens or 0,
            completion_tokens=raw.completion_tokens or 0,
            total_tokens=raw.total_tokens or 0,
        )

    async def complete(self,
                       messages: List[Message],
                       options: Optional[CompletionOptions] = None) -> CompletionResult:
        options = options or CompletionOptions(
            max_tokens=self.config.max_tokens, temperature=self.config.temperature
        )
        try:
            response = await self.client.chat.completions.create(
                **self._request_kwargs(messages, options)
            )
        except OpenAIError as e:
            raise ProviderError(f"Completion request failed: {e}", provider=self.name) from e

        choice = response.choices[0] if response.choices else None
        text = (choice.message.content or "") if choice else ""
        return CompletionResult(
            text=text.strip(),
            finish_reason=(choice.finish_reason if choice else None) or "stop",
            usage=self._usage(response.usage),
        )

    async def stream_complete(self,
                              messages: List[Message],
                              options: Optional[CompletionOptions] = None) -> AsyncIterator[StreamChunk]:
        options = options or CompletionOptions(
            max_tokens=self.config.max_tokens, temperature=self.config.temperature
        )
        try:
            stream = await self.client.chat.completions.create(
                **self._request_kwargs(messages, options),
                stream=True,
                stream_options={"include_usage": True},
            )
        except OpenAIError as e:
            raise ProviderError(f"Streaming request failed: {e}", provider=self.name) from e

        try:
            async for event in stream:
                if event.choices:
                    content = event.choices[0].delta.content
                    if content:
                        yield StreamChunk(text=content)
                if event.usage is not None:
                    yield StreamChunk(usage=self._usage(event.usage))
        except OpenAIError as e:
            raise ProviderError(f"Streaming response failed: {e}", provider=self.name) from e
        finally:
            # Closing the HTTP response cancels the in-flight generation.
            await stream.close()

    async def close(self) -> None:
        await self.client.close()


class MockCompletionProvider(CompletionProvider):
    """Offline provider used when no LLM backend is configured."""

    name = "mock"

    _DOCUMENT_PATTERN = re.compile(
        r"\[Document (\d+)\]\nTitle: [^\n]*\n(?:Content|Summary): (.*?)(?=\n\n---\n\n|\n" + re.escape(BOUNDARY["CONTEXT_END"]) + r"|\Z)",
        re.DOTALL,
    )

    def _answer(self, messages: List[Message]) -> str:
        prompt = messages[-1]["content"] if messages else ""
        if BOUNDARY["CONTEXT_START"] not in prompt:
            # Expansion-style calls: echo the request text
            return prompt.strip()

        documents = self._DOCUMENT_PATTERN.findall(prompt)
        if not documents:
            return "I couldn't find relevant information to answer your question."

        number, content = documents[0]
        sentences = re.split(r"(?<=[.!?])\s+", content.strip())
        return f"Based on the provided context: {' '.join(sentences[:2])} [Citation {number}]"

    async def complete(self,
                       messages: List[Message],
                       options: Optional[CompletionOptions] = None) -> CompletionResult:
        text = self._answer(messages)
        tokens = len(text) // 4
        return CompletionResult(
            text=text,
            usage=CompletionUsage(completion_tokens=tokens, total_tokens=tokens),
        )

    async def stream_complete(self,
                              messages: List[Message],
                              options: Optional[CompletionOptions] = None) -> AsyncIterator[StreamChunk]:
        result = await self.complete(messages, options)
        words = result.text.split(" ")
        for i, word in enumerate(words):
            yield StreamChunk(text=word + (" " if i < len(words) - 1 else ""))
        yield StreamChunk(usage=result.usage)


def create_completion_provider(config: Optional[GeneratorConfig] = None) -> CompletionProvider:
    """Create the configured completion backend, falling back to the mock provider."""
    config = config or GeneratorConfig()
    if config.backend == "openai":
        if config.openai_api_key:
            return OpenAICompletionProvider(config)
        logger.warning("OPENAI_API_KEY not set; using mock completion provider")
    elif config.backend != "mock":
        logger.warning(f"Unknown backend: {config.backend}")
    logger.info("Using mock generator (no LLM)")
    return MockCompletionProvider()
