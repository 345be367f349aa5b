from __future__ import annotations

import random
import re
import urllib.parse
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

_FRACTION_RE = re.compile(r"\.(\d+)")


def _six_digit_fraction(match: "re.Match[str]") -> str:
    return "." + match.group(1)[:6].ljust(6, "0")


def parse_timestamp(value: Optional[str]) -> Optional[float]:
    """Parse an RFC 3339 timestamp into epoch seconds.

    Fractions of any length (Gotify drops trailing zeros and may send
    nanoseconds) are normalised to exactly six digits.
    Values without a UTC offset are treated as unparseable.
    """
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    if text[-1] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(_six_digit_fraction, text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.timestamp()


def local_hour(now: float, tz: Optional[ZoneInfo] = None) -> int:
    if tz is None:
        return datetime.fromtimestamp(now).astimezone().hour
    return datetime.fromtimestamp(now, tz=tz).hour


def truncate_message(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}..."


def redact_url(url: str) -> str:
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return "<invalid-url>"
    if not parts.scheme or not parts.netloc:
        return "<invalid-url>"
    netloc = parts.hostname or ""
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    query = "token=***" if parts.query else ""
    return urllib.parse.urlunsplit((parts.scheme, netloc, parts.path, query, ""))


class ExponentialBackoff:
    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        jitter_sec: float = 0.0,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._base = max(0.001, float(base_delay))
        self._max = max(self._base, float(max_delay))
        self._jitter = max(0.0, float(jitter_sec))
        self._rng = rng
        self._attempts = 0

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def current(self) -> float:
        # Exponent is capped so huge attempt counts cannot overflow.
        step = min(self._attempts, 32)
        return min(self._base * (2**step), self._max)

    def next_delay(self) -> float:
        delay = self.current
        self._attempts += 1
        if self._jitter:
            delay += self._rng() * self._jitter
        return delay

    def reset(self) -> None:
        self._attempts = 0
