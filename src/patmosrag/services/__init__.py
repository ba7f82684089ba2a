"""Service layer orchestrations for PatmosRAG."""

from .generation import GenerationBackend, GenerationConfig, QwenGenerator, TemplateGenerator
from .query import PromptBuilder, PromptBuilderConfig, QueryService, SourceStateTracker, StreamEvent
from .shadow import ShadowRunner

__all__ = [
    "GenerationBackend",
    "GenerationConfig",
    "QwenGenerator",
    "TemplateGenerator",
    "PromptBuilder",
    "PromptBuilderConfig",
    "QueryService",
    "ShadowRunner",
    "SourceStateTracker",
    "StreamEvent",
]
