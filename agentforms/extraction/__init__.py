from agentforms.extraction.coordinator import FieldExtractionCoordinator
from agentforms.extraction.fallback import PatternFallbackExtractor
from agentforms.extraction.llm_client import LLMExtractorClient, parse_extraction

__all__ = [
    "FieldExtractionCoordinator",
    "PatternFallbackExtractor",
    "LLMExtractorClient",
    "parse_extraction",
]
