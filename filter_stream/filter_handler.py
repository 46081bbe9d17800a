"""
Filter Request Handler

Validates requests to the mock ``statuses/filter`` endpoint, extracts the
client's keyword filters and answers with an open-ended newline-delimited
JSON stream of synthetic tweets.
"""

import asyncio
import random
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import unquote_to_bytes

from fastapi import FastAPI
from starlette.requests import ClientDisconnect, Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import Receive, Scope, Send
import structlog

from shared.models import DEFAULT_TWEET_DELAYS, FilterSpec
from filter_stream.metrics import ACTIVE_STREAMS, REQUESTS_REJECTED, STREAM_DURATION
from filter_stream.stream_emitter import ASGIResponseSink, Flusher, StreamEmitter

FILTER_PATH = "/1.1/statuses/filter.json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
MAX_FORM_SIZE = 10 << 20

_INVALID_ESCAPE = re.compile(rb"%(?![0-9A-Fa-f]{2})")

logger = structlog.get_logger(__name__)

SinkFactory = Callable[[Send], Any]


class FormError(ValueError):
    """Raised when a request does not carry a valid URL-encoded form."""


def error_response(message: str, status_code: int) -> Response:
    """Build a plain text error response with a trailing newline."""
    REQUESTS_REJECTED.labels(status=str(status_code)).inc()
    return PlainTextResponse(
        message + "\n",
        status_code=status_code,
        headers={"X-Content-Type-Options": "nosniff"}
    )


def _unescape(component: bytes) -> str:
    if _INVALID_ESCAPE.search(component):
        raise FormError(f"Invalid URL escape in {component[:32]!r}")
    # Any decoded byte sequence is accepted; invalid UTF-8 becomes U+FFFD.
    return unquote_to_bytes(component.replace(b"+", b" ")).decode("utf-8", errors="replace")


def parse_urlencoded(data: bytes) -> Dict[str, List[str]]:
    """Strictly parse ``application/x-www-form-urlencoded`` data.

    Unlike ``urllib.parse.parse_qs`` this rejects malformed percent
    escapes and ``;`` separators instead of passing them through.

    Args:
        data: Raw query string or request body

    Returns:
        Mapping of field names to their values in order of appearance

    Raises:
        FormError: If any field cannot be decoded
    """
    values: Dict[str, List[str]] = {}
    for pair in data.split(b"&"):
        if not pair:
            continue
        if b";" in pair:
            raise FormError("Invalid semicolon separator in form data")
        key, _, value = pair.partition(b"=")
        values.setdefault(_unescape(key), []).append(_unescape(value))
    return values


async def _read_body(request: Request, limit: int = MAX_FORM_SIZE) -> bytes:
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise FormError("Form body too large")
    return bytes(body)


async def parse_form(request: Request) -> Dict[str, List[str]]:
    """Parse form fields from the request body and query string.

    Body fields come first so that they win over query fields with the
    same name. The body is only decoded when it is declared as
    URL-encoded or carries no content type at all.

    Raises:
        FormError: If the body or query string is not a valid form
    """
    try:
        body = await _read_body(request)
    except ClientDisconnect:
        raise FormError("Client disconnected while sending the form")

    content_type = request.headers.get("content-type", "")
    media_type = content_type.split(";", 1)[0].strip().lower()

    form: Dict[str, List[str]] = {}
    if media_type in ("", FORM_CONTENT_TYPE):
        form = parse_urlencoded(body)

    query = parse_urlencoded(request.scope.get("query_string", b""))
    for key, values in query.items():
        form.setdefault(key, []).extend(values)
    return form


class TweetStreamResponse(Response):
    """Unbounded ``application/json`` response streaming synthetic tweets.

    The response owns a single StreamEmitter for the whole connection.
    It stops when the client disconnects, when the server-wide shutdown
    event is set, or when writing to the client fails.
    """

    media_type = "application/json"

    def __init__(
        self,
        filter_spec: FilterSpec,
        shutdown_event: asyncio.Event,
        delays: Sequence[float] = DEFAULT_TWEET_DELAYS,
        rng: Optional[random.Random] = None,
        sink_factory: SinkFactory = ASGIResponseSink
    ) -> None:
        self.status_code = 200
        self.background = None
        self.filter_spec = filter_spec
        self.shutdown_event = shutdown_event
        self.delays = delays
        self.rng = rng
        self.sink_factory = sink_factory
        self.emitter: Optional[StreamEmitter] = None
        self.init_headers()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        sink = self.sink_factory(send)
        if not isinstance(sink, Flusher):
            response = error_response("Streaming not supported", 500)
            await response(scope, receive, send)
            return

        cancelled = asyncio.Event()
        watchers = [
            asyncio.create_task(self._watch_disconnect(receive, cancelled)),
            asyncio.create_task(self._watch_shutdown(cancelled))
        ]
        self.emitter = StreamEmitter(sink, self.filter_spec, cancelled, delays=self.delays, rng=self.rng)

        ACTIVE_STREAMS.inc()
        started = time.monotonic()
        try:
            await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
            await self.emitter.run()
            if hasattr(sink, "close"):
                await sink.close()
        except OSError as e:
            logger.debug("Client connection lost", error=str(e))
        finally:
            for task in watchers:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)
            ACTIVE_STREAMS.dec()
            STREAM_DURATION.observe(time.monotonic() - started)

    async def _watch_disconnect(self, receive: Receive, cancelled: asyncio.Event) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                cancelled.set()
                return

    async def _watch_shutdown(self, cancelled: asyncio.Event) -> None:
        await self.shutdown_event.wait()
        cancelled.set()


class FilterStreamHandler:
    """Request handler for the filter stream endpoint.

    Checks run in a fixed order: method, form data, ``track`` extraction,
    then streaming support (inside the response, once the transport is
    known).
    """

    def __init__(
        self,
        shutdown_event: asyncio.Event,
        delays: Sequence[float] = DEFAULT_TWEET_DELAYS,
        rng: Optional[random.Random] = None,
        sink_factory: SinkFactory = ASGIResponseSink
    ) -> None:
        self.shutdown_event = shutdown_event
        self.delays = tuple(delays)
        self.rng = rng
        self.sink_factory = sink_factory

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        response = await self.handle(Request(scope, receive, send))
        await response(scope, receive, send)

    async def handle(self, request: Request) -> Response:
        """Answer one filter request."""
        client = f"{request.client.host}:{request.client.port}" if request.client else None
        log = logger.bind(component="filter_handler", client=client)

        if request.method != "POST":
            log.info("Rejected filter request", status=405, method=request.method)
            return error_response("Method not allowed", 405)

        try:
            form = await parse_form(request)
        except FormError as e:
            log.info("Rejected filter request", status=400, error=str(e))
            return error_response("Invalid form data", 400)

        filter_spec = FilterSpec.from_track(form.get("track", [""])[0])
        log.info("Simulating tweets for topics", tracks=list(filter_spec))

        return TweetStreamResponse(
            filter_spec,
            self.shutdown_event,
            delays=self.delays,
            rng=self.rng,
            sink_factory=self.sink_factory
        )


def create_app(
    shutdown_event: Optional[asyncio.Event] = None,
    delays: Sequence[float] = DEFAULT_TWEET_DELAYS,
    rng: Optional[random.Random] = None,
    sink_factory: SinkFactory = ASGIResponseSink
) -> FastAPI:
    """Create the ASGI application serving the single filter route.

    Args:
        shutdown_event: Server-wide event ending every open stream when set
        delays: Candidate pauses in seconds between two tweets
        rng: Random source for delays and keywords
        sink_factory: Builds the response sink from the ASGI ``send`` callable

    Returns:
        FastAPI application with ``shutdown_event`` and ``handler`` on its state
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    handler = FilterStreamHandler(shutdown_event, delays=delays, rng=rng, sink_factory=sink_factory)
    app = FastAPI(
        title="Filter Stream Mock",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        # An ASGI endpoint keeps every method on the route; the handler answers 405 itself.
        routes=[Route(FILTER_PATH, handler)]
    )

    app.state.shutdown_event = shutdown_event
    app.state.handler = handler
    return app
