"""Cumulative-text stream consumer.

Streaming backends hand back a zero-argument factory. Calling it yields an
async iterator of chunks shaped like {"text": ...} or {"error": ...}, where
"text" is the full response so far rather than a delta. The consumer keeps
only the latest text and returns it once the stream ends.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Mapping
from typing import Any

from .cancellation import CancellationToken, GenerationAborted, GenerationError

logger = logging.getLogger(__name__)

StreamFactory = Callable[[], AsyncIterator[Mapping[str, Any]]]


async def _close_quietly(stream: AsyncIterator[Any]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as e:  # best effort, the stream may already be broken
        logger.debug("stream close failed: %s", e)


async def consume_stream(factory: StreamFactory, token: CancellationToken | None = None) -> str:
    """Drain a cumulative-text stream and return the final text.

    Raises GenerationAborted when the token is cancelled between chunks.
    Any other failure returns the text accumulated so far, and is only
    re-raised when nothing was produced yet.
    """
    text = ""
    stream = factory()
    try:
        async for chunk in stream:
            if token is not None and token.cancelled:
                logger.info("stream aborted text_so_far=%d", len(text))
                await _close_quietly(stream)
                raise GenerationAborted()

            latest = chunk.get("text")
            if isinstance(latest, str):
                text = latest

            error = chunk.get("error")
            if error:
                raise GenerationError(error if isinstance(error, str) else str(error))
    except GenerationAborted:
        raise
    except Exception as e:
        logger.warning("stream failed text_so_far=%d error=%s", len(text), e)
        await _close_quietly(stream)
        if text:
            logger.info("returning partial stream response len=%d", len(text))
            return text
        raise

    logger.debug("stream consumed len=%d", len(text))
    return text
