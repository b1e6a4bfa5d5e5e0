"""Streaming chat-completion backend for OpenAI-compatible HTTP endpoints."""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from prompt_relay.dispatch.backend.base import (
    ApiRunRequest,
    ApiRunResult,
    BackendRunError,
    OutputChunk,
)
from prompt_relay.dispatch.models import StopReason

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 10.0
SSE_DATA_PREFIX = "data: "
SSE_DONE_SENTINEL = "[DONE]"

_IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

ClientFactory = Callable[[float], httpx.AsyncClient]


def default_client_factory(timeout_seconds: float) -> httpx.AsyncClient:
    timeout = httpx.Timeout(timeout_seconds, connect=CONNECT_TIMEOUT_SECONDS)
    return httpx.AsyncClient(timeout=timeout)


class ChatCompletionBackend:
    """POST ``<endpoint>/chat/completions`` with ``stream: true`` and decode SSE lines."""

    def __init__(
        self,
        *,
        image_root: Path | None = None,
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self.image_root = image_root
        self._client_factory = client_factory

    async def run(self, request: ApiRunRequest) -> ApiRunResult:
        endpoint = (request.backend.endpoint or "").strip().rstrip("/")
        if not endpoint:
            raise BackendRunError(
                f"API backend {request.backend.id!r} has no endpoint configured.",
                exit_code=1,
            )

        result = ApiRunResult()
        consumer = asyncio.create_task(
            self._consume(
                url=f"{endpoint}/chat/completions",
                headers=_build_headers(request.backend.api_key),
                payload=self._build_payload(request),
                request=request,
                result=result,
            ),
        )
        stopper = asyncio.create_task(request.stop_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {consumer, stopper},
                timeout=request.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            logger.warning("Run on backend %s cancelled; closing stream", request.backend.id)
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
            raise
        finally:
            stopper.cancel()

        if consumer in done:
            consumer.result()
            return result

        result.stop_reason = StopReason.USER if stopper in done else StopReason.TIMEOUT
        if result.stop_reason is StopReason.TIMEOUT:
            logger.warning(
                "Backend %s stream timed out after %.1fs",
                request.backend.id,
                request.timeout_seconds,
            )
        consumer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await consumer
        return result

    def _build_payload(self, request: ApiRunRequest) -> dict[str, Any]:
        content: str | list[dict[str, Any]] = request.prompt
        if request.images:
            parts: list[dict[str, Any]] = []
            for image_path in request.images:
                try:
                    data_url = load_image_as_data_url(image_path, image_root=self.image_root)
                except OSError:
                    logger.exception("Failed to load image %s", image_path)
                    continue
                parts.append({"type": "image_url", "image_url": {"url": data_url}})
            parts.append({"type": "text", "text": request.prompt})
            content = parts
        return {
            "model": request.model or request.backend.default_model,
            "messages": [{"role": "user", "content": content}],
            "stream": True,
        }

    async def _consume(  # noqa: PLR0913
        self,
        *,
        url: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        request: ApiRunRequest,
        result: ApiRunResult,
    ) -> None:
        try:
            async with (
                self._client_factory(request.timeout_seconds) as client,
                client.stream("POST", url, json=payload, headers=headers) as response,
            ):
                result.status_code = response.status_code
                result.status_text = response.reason_phrase
                if not response.is_success:
                    body = await response.aread()
                    result.error_body = body.decode("utf-8", errors="replace")
                    return
                async for line in response.aiter_lines():
                    if not _apply_sse_line(line, request=request, result=result):
                        break
        except (httpx.HTTPError, ValueError) as error:
            result.transport_error = str(error) or type(error).__name__
            return

        if not result.output.strip() and result.reasoning.strip():
            logger.info(
                "Backend %s returned reasoning only; using it as output (%d chars)",
                request.backend.id,
                len(result.reasoning),
            )
            result.output = result.reasoning
            result.used_reasoning_as_fallback = True
            if request.on_output is not None:
                request.on_output(OutputChunk(text=result.reasoning, is_reasoning=True))


def _apply_sse_line(line: str, *, request: ApiRunRequest, result: ApiRunResult) -> bool:
    """Fold one SSE line into ``result``; returns False on the end sentinel."""

    if not line.startswith(SSE_DATA_PREFIX):
        return True
    data = line[len(SSE_DATA_PREFIX) :].strip()
    if data == SSE_DONE_SENTINEL:
        return False
    if not data:
        return True

    parsed = json.loads(data)
    delta = _first_delta(parsed)
    content = delta.get("content")
    if isinstance(content, str) and content:
        result.output += content
        if request.on_output is not None:
            request.on_output(OutputChunk(text=content))
    reasoning = delta.get("reasoning")
    if isinstance(reasoning, str) and reasoning:
        result.reasoning += reasoning
    return True


def _first_delta(parsed: object) -> dict[str, Any]:
    if not isinstance(parsed, dict):
        return {}
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return {}
    delta = choices[0].get("delta")
    return delta if isinstance(delta, dict) else {}


def _build_headers(api_key: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def image_mime_type(path: Path) -> str:
    return _IMAGE_MIME_TYPES.get(path.suffix.lower(), "image/png")


def load_image_as_data_url(image_path: str, *, image_root: Path | None = None) -> str:
    """Read an image and encode it as a ``data:`` URL.

    Relative paths resolve under ``image_root`` when one is configured.
    """

    path = Path(image_path)
    if not path.is_absolute() and image_root is not None:
        path = image_root / path
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{image_mime_type(path)};base64,{encoded}"
