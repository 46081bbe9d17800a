"""Shared data models for the filter stream mock.

This module contains the core data structures used by the mock server
for representing synthetic tweets, client keyword filters and the
server configuration.
"""

import json
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

TWEET_TEXT_PREFIX = "Someone just mentioned "

DEFAULT_ADDR = ":8080"
DEFAULT_SHUTDOWN_TIMEOUT = 2.0
DEFAULT_TWEET_DELAYS: Tuple[float, ...] = (1, 2, 3)

# Characters escaped in JSON output so lines are safe to embed in HTML.
_JSON_HTML_ESCAPES = {
    ord("<"): "\\u003c",
    ord(">"): "\\u003e",
    ord("&"): "\\u0026",
    0x2028: "\\u2028",
    0x2029: "\\u2029",
}


@dataclass(frozen=True)
class Tweet:
    """Represents a synthetic tweet in the legacy v1.1 stream format.

    Only the ``text`` field is modelled; the historical schema carried
    many more fields that clients of the mock never rely on.

    Attributes:
        text: Human readable tweet body
    """

    text: str

    def to_dict(self) -> dict:
        """Return the wire representation of the tweet."""
        return {"text": self.text}

    def to_json_line(self) -> bytes:
        """Serialize the tweet as one compact JSON object plus newline."""
        line = json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)
        line = line.translate(_JSON_HTML_ESCAPES)
        return (line + "\n").encode("utf-8")


@dataclass(frozen=True)
class FilterSpec:
    """Keyword list supplied by a client through the ``track`` field.

    Keywords are kept exactly as the client sent them: no trimming,
    case folding or deduplication. Adjacent commas produce empty
    keywords and a missing ``track`` produces a single empty keyword.

    Attributes:
        keywords: Ordered keywords, never empty
    """

    keywords: Tuple[str, ...]

    def __post_init__(self) -> None:
        """Validate the keyword list."""
        if not self.keywords:
            raise ValueError("Filter spec needs at least one keyword")

    @classmethod
    def from_track(cls, track: Optional[str]) -> "FilterSpec":
        """Build a filter spec from a raw comma-separated ``track`` value."""
        return cls(tuple((track or "").split(",")))

    def __len__(self) -> int:
        return len(self.keywords)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keywords)

    def __contains__(self, keyword: object) -> bool:
        return keyword in self.keywords


@dataclass(frozen=True)
class ServerConfig:
    """Startup configuration of the mock server.

    Attributes:
        addr: Listen address in ``host:port`` form
        shutdown_timeout: Grace period in seconds for draining streams
        tweet_delays: Candidate pauses in seconds between two tweets
        metrics_port: Port for the Prometheus exporter, 0 disables it
    """

    addr: str = DEFAULT_ADDR
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    tweet_delays: Tuple[float, ...] = DEFAULT_TWEET_DELAYS
    metrics_port: int = 0

    def __post_init__(self) -> None:
        """Validate server configuration."""
        if self.shutdown_timeout <= 0:
            raise ValueError("Shutdown timeout must be positive")
        if not self.tweet_delays:
            raise ValueError("At least one tweet delay is required")
        if any(delay < 0 for delay in self.tweet_delays):
            raise ValueError("Tweet delays must be non-negative")
        if not 0 <= self.metrics_port <= 65535:
            raise ValueError("Metrics port must be between 0 and 65535")
