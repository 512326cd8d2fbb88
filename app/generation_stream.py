"""Relay a streamed provider completion to the client as SSE frames."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable

import httpx

from completion_relay import (
    PREPARING_STATUS,
    SENDING_STATUS,
    STREAMING_STATUS,
    CompletionRelay,
    RelayEvent,
    StreamLabels,
    error_event,
    status_event,
)
from app.anthropic_client import AnthropicClient, UpstreamError

logger = logging.getLogger("appstore.stream")

KEEPALIVE_FRAME = ": ping\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def relay_completion(client: AnthropicClient, body: dict, labels: StreamLabels) -> AsyncIterator[RelayEvent]:
    relay = CompletionRelay(labels=labels)
    yield status_event(labels.starting)
    yield status_event(PREPARING_STATUS)
    yield status_event(SENDING_STATUS)
    relay.request_sent()
    try:
        async with client.open_stream(body) as resp:
            if resp.status_code >= 400:
                detail = await resp.aread()
                logger.error("provider_stream_error status=%s body=%s", resp.status_code, detail[:500])
                for event in relay.fail(f"Error: API error - {resp.status_code}"):
                    yield event
                return
            yield status_event(STREAMING_STATUS)
            try:
                async for chunk in resp.aiter_bytes():
                    for event in relay.feed(chunk):
                        yield event
                    if relay.terminal:
                        return
            except httpx.HTTPError as exc:
                logger.error("provider_stream_read_failed error=%s", exc)
                for event in relay.fail(f"Error: Stream error - {exc}"):
                    yield event
                return
    except (httpx.HTTPError, UpstreamError) as exc:
        logger.error("provider_stream_request_failed error=%s", exc)
        for event in relay.fail(f"Error: Request failed - {exc}"):
            yield event
        return
    for event in relay.finish():
        yield event


async def sse_frames(
    events: AsyncIterator[RelayEvent],
    keepalive: float = 1.0,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """Forward relay events in order, writing a ping comment whenever the feed is idle."""
    queue: asyncio.Queue = asyncio.Queue()
    done = object()

    async def _produce() -> None:
        try:
            async for event in events:
                await queue.put(event.to_frame())
        except Exception as exc:
            logger.exception("generation_stream_failed")
            await queue.put(error_event(f"Error: Stream error - {exc}").to_frame())
        finally:
            queue.put_nowait(done)

    task = asyncio.create_task(_produce())
    try:
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    logger.info("generation_stream_client_gone")
                    break
                yield KEEPALIVE_FRAME
                continue
            if item is done:
                break
            yield item
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
