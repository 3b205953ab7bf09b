"""Turn model responses into accumulated message updates."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
import inspect
import json
import logging
from typing import Any

from pydantic import ValidationError

from .attachments import AttachmentStore
from .client import ModelResponse, SingleShotResponse, StreamingResponse
from .exceptions import FragmentDecodeError
from .models import GroundingSource

LOGGER = logging.getLogger(__name__)

NO_IMAGE_NOTE = (
    "*[System: No image was generated. The model may have interpreted this as "
    "a chat request or refused the prompt safety checks.]*"
)
NO_IMAGE_FALLBACK = (
    "Failed to generate image. The model might have refused the prompt due to "
    "safety filters."
)


@dataclass(frozen=True)
class StreamUpdate:
    """Full accumulated state of a response after one fragment."""

    text: str
    grounding: tuple[GroundingSource, ...] | None = None
    image_ref: str | None = None


Emit = Callable[[StreamUpdate], Awaitable[None] | None]


@dataclass(frozen=True)
class Fragment:
    text: str = ""
    grounding: tuple[GroundingSource, ...] = ()


def parse_fragment(line: str) -> Fragment:
    """Parse one NDJSON line; raise ``FragmentDecodeError`` if its text is unusable.

    Bad grounding entries are dropped one by one and never cost the text delta.
    """
    try:
        payload = json.loads(line)
    except ValueError as exc:
        raise FragmentDecodeError(f"Invalid JSON fragment: {exc}") from exc
    if not isinstance(payload, dict):
        raise FragmentDecodeError("Fragment is not a JSON object.")

    text = payload.get("text")
    if text is None:
        text = ""
    if not isinstance(text, str):
        raise FragmentDecodeError("Fragment text must be a string.")
    return Fragment(text=text, grounding=_parse_grounding(payload.get("grounding")))


def _skip_grounding(reason: str) -> None:
    LOGGER.warning(
        "decoder.grounding.skipped",
        extra={"event": "decoder.grounding.skipped", "reason": reason},
    )


def _parse_grounding(raw: Any) -> tuple[GroundingSource, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        _skip_grounding("Fragment grounding must be a list.")
        return ()
    sources: list[GroundingSource] = []
    for item in raw:
        try:
            sources.append(GroundingSource.model_validate(item))
        except ValidationError as exc:
            _skip_grounding(f"Invalid grounding entry: {exc}")
    return tuple(sources)


async def _call(emit: Emit, update: StreamUpdate) -> None:
    result = emit(update)
    if inspect.isawaitable(result):
        await result


class StreamDecoder:
    """Decode single-shot and incremental responses into ``StreamUpdate`` events.

    Single-shot responses persist a generated image through the attachment
    store before the one emission, so callers only ever see references.
    """

    def __init__(self, attachments: AttachmentStore) -> None:
        self.attachments = attachments

    async def decode(self, response: ModelResponse, emit: Emit) -> None:
        if isinstance(response, SingleShotResponse):
            await self.decode_single(response, emit)
        elif isinstance(response, StreamingResponse):
            await self.decode_lines(response.lines, emit)
        else:
            raise TypeError(f"Unsupported response type {type(response)!r}.")

    async def decode_single(self, response: SingleShotResponse, emit: Emit) -> None:
        if response.image:
            stored = await self.attachments.persist(response.image)
            await _call(emit, StreamUpdate(text=response.text, image_ref=stored.token))
            return
        if response.text:
            text = f"{response.text}\n\n{NO_IMAGE_NOTE}"
        else:
            text = NO_IMAGE_FALLBACK
        await _call(emit, StreamUpdate(text=text))

    async def decode_lines(self, lines: AsyncGenerator[str, None], emit: Emit) -> int:
        """Consume NDJSON lines and emit after every usable fragment.

        Returns the number of fragments skipped as malformed. ``lines`` is
        closed on exit, so an early stop releases the underlying connection.
        """
        full_text = ""
        grounding: list[GroundingSource] = []
        skipped = 0
        line_number = 0

        async with aclosing(lines) as stream:
            async for raw_line in stream:
                line_number += 1
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    fragment = parse_fragment(line)
                except FragmentDecodeError as exc:
                    skipped += 1
                    LOGGER.warning(
                        "decoder.fragment.skipped",
                        extra={
                            "event": "decoder.fragment.skipped",
                            "line": line_number,
                            "reason": str(exc),
                        },
                    )
                    continue

                full_text += fragment.text
                grounding.extend(fragment.grounding)
                await _call(
                    emit,
                    StreamUpdate(
                        text=full_text.lstrip(),
                        grounding=tuple(grounding) if grounding else None,
                    ),
                )
        return skipped
