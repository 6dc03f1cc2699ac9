"""Services: extraction model client, conversation context, incremental insight extractor."""
from insight_relay.services.conversation import ConversationContext
from insight_relay.services.extractor import InsightExtractor, build_system_prompt
from insight_relay.services.llm_client import ExtractionModelClient, ModelResponse

__all__ = [
    "ConversationContext",
    "InsightExtractor",
    "build_system_prompt",
    "ExtractionModelClient",
    "ModelResponse",
]
