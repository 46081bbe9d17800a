"""
Synthetic Tweet Generator

Builds the fake tweets served on filter streams. Every tweet mentions one
keyword picked uniformly at random from the client's filter spec.
"""

import random
from typing import Optional

from shared.models import TWEET_TEXT_PREFIX, FilterSpec, Tweet

# Process-wide source, seeded from OS entropy. Only drawn from on the event loop thread.
_rng = random.Random()


def default_rng() -> random.Random:
    """Return the process-wide random source."""
    return _rng


def generate_tweet(filter_spec: FilterSpec, rng: Optional[random.Random] = None) -> Tweet:
    """Create a tweet mentioning a random keyword of the filter spec.

    Args:
        filter_spec: Keywords requested by the client, at least one
        rng: Random source to draw from, the process-wide one by default

    Returns:
        A new Tweet whose text is the fixed prefix followed by the keyword
    """
    keyword = (rng or _rng).choice(filter_spec.keywords)
    return Tweet(text=TWEET_TEXT_PREFIX + keyword)
