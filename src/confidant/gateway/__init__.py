"""Gateway: queued, rate-limited access to the inference server."""

from .llm_gateway import GatewayMetrics, LLMGateway, build_analysis_prompt, create_gateway
from .request_queue import RequestQueue
from .requests import ChatMessage, GatewayRequest, QueuedRequest, RequestOptions

__all__ = [
    "ChatMessage",
    "GatewayMetrics",
    "GatewayRequest",
    "LLMGateway",
    "QueuedRequest",
    "RequestOptions",
    "RequestQueue",
    "build_analysis_prompt",
    "create_gateway",
]
