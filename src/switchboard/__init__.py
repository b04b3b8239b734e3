"""Switchboard: one canonical client model over many LLM providers.

Public API:
    - Dispatcher: bounded-concurrency execution (sync and streaming)
    - Request / Message / Response / Delta: the canonical model
    - ProviderConfig: resolved provider target for a call
    - SwitchboardError and ErrorRecord: the shared error taxonomy
"""

from __future__ import annotations

import logging

from switchboard.config import DispatcherSettings, ProviderConfig, load_settings
from switchboard.dispatcher import Dispatcher, PoolStats, WorkerPool
from switchboard.errors import (
    AuthenticationError,
    ConfigurationError,
    ContentFilterError,
    ErrorCategory,
    ErrorKind,
    ErrorRecord,
    InternalError,
    InvalidRequestError,
    InvalidResponseError,
    ProviderError,
    ProviderNotFoundError,
    RateLimitError,
    RequestTimeoutError,
    ResourceExhaustedError,
    SwitchboardError,
    UnsupportedFeatureError,
)
from switchboard.models import (
    Choice,
    Delta,
    Embedding,
    EmbeddingRequest,
    EmbeddingResponse,
    ErrorDelta,
    FinishReason,
    FunctionCall,
    Message,
    NamedToolChoice,
    Request,
    Response,
    Role,
    ThinkingBlock,
    ThinkingConfig,
    ToolCall,
    ToolCallDelta,
    ToolSpec,
    Usage,
)
from switchboard.providers import ADAPTERS, ProviderName, get_adapter
from switchboard.retry import RetryPolicy
from switchboard.streaming import DeltaChannel, StreamAccumulator, StreamState, collect_stream
from switchboard.transport import HttpRequest, HttpResponse, HttpxTransport, Transport

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("switchboard-llm")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("switchboard").addHandler(logging.NullHandler())

__all__ = [
    "ADAPTERS",
    "AuthenticationError",
    "Choice",
    "ConfigurationError",
    "ContentFilterError",
    "Delta",
    "DeltaChannel",
    "Dispatcher",
    "DispatcherSettings",
    "Embedding",
    "EmbeddingRequest",
    "EmbeddingResponse",
    "ErrorCategory",
    "ErrorDelta",
    "ErrorKind",
    "ErrorRecord",
    "FinishReason",
    "FunctionCall",
    "HttpRequest",
    "HttpResponse",
    "HttpxTransport",
    "InternalError",
    "InvalidRequestError",
    "InvalidResponseError",
    "Message",
    "NamedToolChoice",
    "PoolStats",
    "ProviderConfig",
    "ProviderError",
    "ProviderName",
    "ProviderNotFoundError",
    "RateLimitError",
    "Request",
    "RequestTimeoutError",
    "ResourceExhaustedError",
    "Response",
    "RetryPolicy",
    "Role",
    "StreamAccumulator",
    "StreamState",
    "SwitchboardError",
    "ThinkingBlock",
    "ThinkingConfig",
    "ToolCall",
    "ToolCallDelta",
    "ToolSpec",
    "Transport",
    "UnsupportedFeatureError",
    "Usage",
    "WorkerPool",
    "__version__",
    "collect_stream",
    "get_adapter",
    "load_settings",
]
