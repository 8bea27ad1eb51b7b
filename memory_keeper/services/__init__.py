from .backoff import BackoffPolicy, is_retriable_error, retry_with_backoff
from .chroma_gateway import AvailabilityCircuit, ChromaGateway, GatewayResponse, ProtocolShape
from .gemini_client import GeminiClient

__all__ = [
    "AvailabilityCircuit",
    "BackoffPolicy",
    "ChromaGateway",
    "GatewayResponse",
    "GeminiClient",
    "ProtocolShape",
    "is_retriable_error",
    "retry_with_backoff",
]
