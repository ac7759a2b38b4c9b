"""
Optional grounding check for generated answers.
Asks the model whether an answer is supported by its context and validates
the JSON reply against a strict schema.
"""

import logging
import re
from typing import List, Optional

from pydantic import BaseModel, Field, StrictBool, StrictStr, ValidationError

from rag_tenant_qa.completion import CompletionOptions, CompletionProvider, TokenUsage
from rag_tenant_qa.config import VERIFICATION_PROMPT_TEMPLATE
from rag_tenant_qa.errors import MalformedProviderOutputError
from rag_tenant_qa.generator import ContextItem, format_context

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.I)


class VerificationResult(BaseModel):
    """Verifier verdict. Values of the wrong type are rejected, never coerced."""
    supported: StrictBool = Field(..., description="Whether the answer is fully supported")
    confidence: float = Field(..., ge=0.0, le=1.0, strict=True, description="Verifier confidence")
    unsupported_claims: List[StrictStr] = Field(default_factory=list, description="Claims missing from context")


def parse_verification(raw: str) -> VerificationResult:
    """Validate a verifier reply, raising MalformedProviderOutputError on any mismatch."""
    text = raw.strip()
    fenced = _CODE_FENCE.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        return VerificationResult.model_validate_json(text)
    except ValidationError as e:
        raise MalformedProviderOutputError(
            f"Verifier returned malformed output: {e.error_count()} validation error(s)",
            provider="verifier",
        ) from e


class AnswerVerifier:
    """Checks that an answer is grounded in the supplied context."""

    def __init__(self,
                 provider: CompletionProvider,
                 max_tokens: int = 300,
                 temperature: float = 0.0):
        self.provider = provider
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def verify(self,
                     answer: str,
                     context_items: List[ContextItem],
                     usage: Optional[TokenUsage] = None) -> VerificationResult:
        prompt = VERIFICATION_PROMPT_TEMPLATE.format(
            answer=answer,
            context=format_context(context_items),
        )
        messages = [{"role": "user", "content": prompt}]
        options = CompletionOptions(max_tokens=self.max_tokens, temperature=self.temperature)

        result = await self.provider.complete(messages, options)
        if usage is not None:
            usage.add_completion(result.usage)

        verdict = parse_verification(result.text)
        if not verdict.supported:
            logger.info(f"Verifier flagged {len(verdict.unsupported_claims)} unsupported claim(s)")
        return verdict
