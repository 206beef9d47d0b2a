"""Narrowed views over a task's event stream.

Both projections pass the source's failure and completion through unchanged
and close the source when they are closed. Wrap them in
``contextlib.aclosing`` when breaking out of the loop early.
"""

from __future__ import annotations

import codecs
from collections.abc import AsyncIterable, AsyncIterator

from .events import TaskEvent

__all__ = ["only_exit_status", "only_output"]


async def _aclose(events: AsyncIterable[TaskEvent]) -> None:
    aclose = getattr(events, "aclose", None)
    if aclose is not None:
        await aclose()


async def only_exit_status(events: AsyncIterable[TaskEvent]) -> AsyncIterator[int]:
    """Yield the status of ``Exit`` events, dropping everything else.

    A failing task yields nothing and raises its TaskError.
    """
    try:
        async for event in events:
            if event.exit_status is not None:
                yield event.exit_status
    finally:
        await _aclose(events)


async def only_output(
    events: AsyncIterable[TaskEvent],
    encoding: str | None = None,
) -> AsyncIterator[bytes | str]:
    """Yield stdout and stderr payloads in arrival order.

    When decoding, stdout and stderr each get an incremental decoder, so a
    multibyte character split across two reads is decoded once both halves
    have arrived. Chunks that decode to nothing are skipped.

    Args:
        events: source stream
        encoding: decode each chunk with this encoding (None = raw bytes)
    """
    decoders: dict[str, codecs.IncrementalDecoder] = {}
    if encoding is not None:
        decoder_class = codecs.getincrementaldecoder(encoding)
        decoders = {"stdout": decoder_class(), "stderr": decoder_class()}

    try:
        async for event in events:
            output = event.output
            if output is None:
                continue
            if encoding is None:
                yield output
                continue
            text = decoders[event.kind].decode(output)
            if text:
                yield text
        for decoder in decoders.values():
            text = decoder.decode(b"", final=True)
            if text:
                yield text
    finally:
        await _aclose(events)
