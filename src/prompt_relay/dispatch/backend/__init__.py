"""Run execution strategies."""

from prompt_relay.dispatch.backend.api_backend import ChatCompletionBackend
from prompt_relay.dispatch.backend.base import (
    ApiRunRequest,
    ApiRunResult,
    BackendRunError,
    OutputCallback,
    OutputChunk,
    ProcessRunRequest,
    ProcessRunResult,
)
from prompt_relay.dispatch.backend.process_backend import ProcessBackend

__all__ = [
    "ApiRunRequest",
    "ApiRunResult",
    "BackendRunError",
    "ChatCompletionBackend",
    "OutputCallback",
    "OutputChunk",
    "ProcessBackend",
    "ProcessRunRequest",
    "ProcessRunResult",
]
