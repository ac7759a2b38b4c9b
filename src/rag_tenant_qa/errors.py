"""
Error types raised by the question answering pipeline.
Each error carries a stable code that callers can map to responses.
"""

from typing import Optional


class RAGError(Exception):
    """Base class for pipeline errors."""

    code = "RAG_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class InputValidationError(RAGError):
    """Question rejected before any provider call (empty, oversized, malformed)."""

    code = "INVALID_INPUT"


class ProviderError(RAGError):
    """An embedding or completion provider call failed."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: str = "unknown"):
        super().__init__(message)
        self.provider = provider


class MalformedProviderOutputError(ProviderError):
    """A provider returned output that does not match the expected structure."""

    code = "MALFORMED_PROVIDER_OUTPUT"


class RAGPipelineError(RAGError):
    """Fatal pipeline failure reported to the caller with a generic message."""

    code = "RAG_ERROR"

    def __init__(self, message: str, trace_id: str, code: Optional[str] = None):
        super().__init__(message, code)
        self.trace_id = trace_id

    def to_dict(self):
        return {"error": self.message, "code": self.code, "trace_id": self.trace_id}
