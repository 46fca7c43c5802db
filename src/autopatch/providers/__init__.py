"""Generative providers that propose and repair unified diffs."""

from .base import PatchGuidance, PatchProposal, PatchProvider, PatchRequest, ProviderError, RepairProposal
from .llm import (
    LLMClient,
    LLMClientError,
    LLMPatchProvider,
    LLMRequest,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .responses import ResponsesClient

__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMPatchProvider",
    "LLMRequest",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "PatchGuidance",
    "PatchProposal",
    "PatchProvider",
    "PatchRequest",
    "ProviderError",
    "RepairProposal",
    "ResponsesClient",
]
