"""HTTP client for the model backend proxy.

Image turns get one JSON object back; chat turns get newline-delimited JSON
fragments. The client only deals with transport. Turning fragments into
message updates is the decoder's job.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from dataclasses import dataclass
import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .exceptions import RequestFailureError

LOGGER = logging.getLogger(__name__)

CHAT_ENDPOINT = "/api/chat"


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class HistoryEntry(_Wire):
    role: str
    text: str


class ModelOptions(_Wire):
    image_mode: bool = False
    web_search: bool = False


class ModelRequest(_Wire):
    """Body of one model call."""

    history: list[HistoryEntry] = Field(default_factory=list)
    message: str
    attachments: list[str] = Field(default_factory=list)
    model: str
    options: ModelOptions = Field(default_factory=ModelOptions)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class SingleShotResponse:
    """Complete answer of an image-generation call."""

    text: str = ""
    image: str | None = None


@dataclass
class StreamingResponse:
    """Lazily consumed newline-delimited JSON body."""

    lines: AsyncGenerator[str, None]


ModelResponse = SingleShotResponse | StreamingResponse


class ModelClient(Protocol):
    """What the send pipeline needs from a model backend."""

    async def send(self, request: ModelRequest) -> ModelResponse: ...


class HttpModelClient:
    """Talk to the backend proxy over HTTP with bounded retries."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 120,
        retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.retries = max(0, retries)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}{CHAT_ENDPOINT}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self, request: ModelRequest) -> ModelResponse:
        payload = request.to_payload()
        LOGGER.info(
            "client.request.start",
            extra={
                "event": "client.request.start",
                "model": request.model,
                "image_mode": request.options.image_mode,
                "attachments": len(request.attachments),
                "history": len(request.history),
            },
        )
        if request.options.image_mode:
            return await self._post_single(payload)
        return StreamingResponse(self._stream_lines(payload))

    async def _backoff(self, attempt: int, exc: Exception) -> None:
        LOGGER.warning(
            "client.request.retry",
            extra={
                "event": "client.request.retry",
                "attempt": attempt + 1,
                "error_type": exc.__class__.__name__,
            },
        )
        await asyncio.sleep(self.retry_backoff_seconds * (attempt + 1))

    def _unreachable(self) -> RequestFailureError:
        return RequestFailureError(f"Unable to reach model backend at {self.endpoint}.")

    @staticmethod
    def _status_failure(response: httpx.Response) -> RequestFailureError:
        message = f"HTTP {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, str) and error.strip():
                message = error.strip()
        LOGGER.warning(
            "client.request.failed",
            extra={
                "event": "client.request.failed",
                "status": response.status_code,
                "error": message,
            },
        )
        return RequestFailureError(message)

    async def _post_single(self, payload: dict[str, Any]) -> SingleShotResponse:
        for attempt in range(self.retries + 1):
            try:
                response = await self._client.post(self.endpoint, json=payload)
                break
            except httpx.TransportError as exc:
                if attempt >= self.retries:
                    raise self._unreachable() from exc
                await self._backoff(attempt, exc)

        if response.is_error:
            raise self._status_failure(response)
        try:
            body = response.json()
        except ValueError as exc:
            raise RequestFailureError("Malformed response from model backend.") from exc
        if not isinstance(body, dict):
            raise RequestFailureError("Malformed response from model backend.")

        text = body.get("text")
        image = body.get("image")
        return SingleShotResponse(
            text=text if isinstance(text, str) else "",
            image=image if isinstance(image, str) and image else None,
        )

    async def _stream_lines(self, payload: dict[str, Any]) -> AsyncGenerator[str, None]:
        for attempt in range(self.retries + 1):
            received = False
            try:
                async with self._client.stream(
                    "POST", self.endpoint, json=payload
                ) as response:
                    if response.is_error:
                        await response.aread()
                        raise self._status_failure(response)
                    async for line in response.aiter_lines():
                        received = True
                        yield line
                return
            except httpx.TransportError as exc:
                if received:
                    raise RequestFailureError(
                        "Connection to model backend was interrupted."
                    ) from exc
                if attempt >= self.retries:
                    raise self._unreachable() from exc
                await self._backoff(attempt, exc)
