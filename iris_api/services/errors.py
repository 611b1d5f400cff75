from __future__ import annotations


class IrisError(Exception):
    """Base error for the answer service."""


class KnowledgeBaseError(IrisError):
    pass


class UpstreamFailure(IrisError):
    """A provider call failed after its retry budget was spent."""


class EmbeddingProviderError(UpstreamFailure):
    pass


class LLMProviderError(UpstreamFailure):
    pass


class CacheBackendUnavailable(IrisError):
    pass
