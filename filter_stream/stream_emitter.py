"""
Stream Emitter

Drives the per-connection loop of a filter stream: wait a random short
delay, write one newline-delimited JSON tweet, flush it to the client and
start over until the client leaves or the server shuts down.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence, runtime_checkable

import structlog

from shared.models import DEFAULT_TWEET_DELAYS, FilterSpec
from filter_stream.metrics import TWEETS_EMITTED
from filter_stream.tweet_generator import default_rng, generate_tweet

ASGISend = Callable[[Dict[str, Any]], Awaitable[None]]


@runtime_checkable
class Flusher(Protocol):
    """A sink able to push buffered bytes to the client on demand."""

    async def flush(self) -> None:
        ...


@runtime_checkable
class ResponseSink(Flusher, Protocol):
    """Writable response body with an explicit flush."""

    def write(self, data: bytes) -> int:
        ...


class ASGIResponseSink:
    """Response sink buffering writes and sending them as ASGI body messages.

    Each flush turns the buffered bytes into one ``http.response.body``
    message with ``more_body`` set, which the server hands straight to
    the transport.
    """

    def __init__(self, send: ASGISend) -> None:
        self._send = send
        self._buffer = bytearray()
        self._closed = False

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ConnectionResetError("Response already closed")
        self._buffer.extend(data)
        return len(data)

    async def flush(self) -> None:
        if self._closed:
            raise ConnectionResetError("Response already closed")
        if not self._buffer:
            return
        chunk = bytes(self._buffer)
        self._buffer.clear()
        await self._send({"type": "http.response.body", "body": chunk, "more_body": True})

    async def close(self) -> None:
        """Finish the response body. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        chunk = bytes(self._buffer)
        self._buffer.clear()
        await self._send({"type": "http.response.body", "body": chunk, "more_body": False})


class StreamEmitter:
    """Per-connection tweet emission loop.

    The loop is single-threaded: sleep, produce, write, flush, repeat.
    Every suspension point can be interrupted by the cancellation event,
    which is set when the client disconnects or the server shuts down.
    """

    def __init__(
        self,
        sink: ResponseSink,
        filter_spec: FilterSpec,
        cancelled: asyncio.Event,
        delays: Sequence[float] = DEFAULT_TWEET_DELAYS,
        rng: Optional[random.Random] = None
    ) -> None:
        """Initialize the emitter.

        Args:
            sink: Response body to write tweets to
            filter_spec: Keywords of this connection, fixed for its lifetime
            cancelled: Event signalling client gone or server shutting down
            delays: Candidate pauses in seconds, one is picked per tweet
            rng: Random source for delays and keywords
        """
        if not delays:
            raise ValueError("At least one delay is required")

        self.sink = sink
        self.filter_spec = filter_spec
        self.cancelled = cancelled
        self.delays = tuple(delays)
        self._rng = rng or default_rng()
        self._emitted = 0
        self.stop_reason: Optional[str] = None

        self.logger = structlog.get_logger(__name__)

    @property
    def emitted(self) -> int:
        """Number of tweets delivered so far."""
        return self._emitted

    async def run(self) -> int:
        """Emit tweets until cancelled or the connection fails.

        Returns:
            Number of tweets written and flushed
        """
        log = self.logger.bind(component="stream_emitter", tracks=list(self.filter_spec))

        while not self.cancelled.is_set():
            if await self._pause(self._rng.choice(self.delays)):
                self.stop_reason = "cancelled"
                break

            tweet = generate_tweet(self.filter_spec, self._rng)
            try:
                line = tweet.to_json_line()
            except (TypeError, ValueError) as e:
                self.stop_reason = "serialization_error"
                log.warning("Failed to serialize tweet", error=str(e))
                break

            try:
                self.sink.write(line)
                await self.sink.flush()
            except OSError as e:
                self.stop_reason = "connection_closed"
                log.debug("Write to client failed", error=str(e))
                break

            self._emitted += 1
            TWEETS_EMITTED.inc()
        else:
            self.stop_reason = "cancelled"

        log.debug("Stream emitter stopped", reason=self.stop_reason, tweets=self._emitted)
        return self._emitted

    async def _pause(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds, returning True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self.cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
