"""
Freshness evaluation: decide whether a local image is stale compared to
the latest image the registry publishes for the same repository:tag.

The evaluator is a pure function of its inputs so that it can be tested
without a Docker daemon or network access.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

# Tolerance for clock skew and registry metadata lag when only timestamps
# can be compared.
TIME_SKEW_TOLERANCE = timedelta(hours=1)

_SECONDS_PER_DAY = 86400


class Rationale(str, Enum):
    """Which rule of the comparison policy produced a verdict."""
    DIGEST_MISMATCH = "digest_mismatch"
    DIGEST_MATCH = "digest_match"
    LOCAL_DIGEST_REMOTE_UNKNOWN = "local_digest_remote_unknown"
    TIME_THRESHOLD_EXCEEDED = "time_threshold_exceeded"
    TIME_WITHIN_THRESHOLD = "time_within_threshold"


@dataclass(frozen=True)
class LocalImageMetadata:
    """Metadata of the image as present in the local runtime."""
    digest: Optional[str]
    created_at: Optional[datetime]


@dataclass(frozen=True)
class RemoteImageMetadata:
    """Metadata of the latest image published in the registry."""
    digest: Optional[str]
    last_updated_at: Optional[datetime]
    digest_available: bool


@dataclass(frozen=True)
class FreshnessVerdict:
    has_update: bool
    rationale: Rationale
    days_since_remote_update: int


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp from the Docker API or registry.

    Docker reports nanosecond fractions, which ``datetime`` cannot hold, so
    the fraction is truncated to microseconds.  Returns an aware UTC datetime,
    or None when the value is missing or unparseable.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'

    if '.' in text:
        base, _, rest = text.partition('.')
        digits = ''
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        offset = rest[len(digits):]
        text = f"{base}.{(digits + '000000')[:6]}{offset}"

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def days_since(timestamp: Optional[datetime], now: datetime) -> int:
    """Whole days elapsed since ``timestamp``, never negative."""
    if timestamp is None:
        return 0
    elapsed = (now - timestamp).total_seconds()
    return max(0, math.floor(elapsed / _SECONDS_PER_DAY))


def evaluate(local: LocalImageMetadata, remote: RemoteImageMetadata,
             now: Optional[datetime] = None) -> FreshnessVerdict:
    """Apply the tiered comparison policy to local and remote metadata.

    1. Both digests known: compare them as opaque strings.
    2. Local digest known, remote digest unknown: report no update, since
       staleness cannot be established.
    3. No local digest: the registry image is newer if it was published more
       than ``TIME_SKEW_TOLERANCE`` after the local image was created.

    Args:
        local: Local image metadata
        remote: Remote image metadata
        now: Reference time for the day count (default: current UTC time)

    Returns:
        FreshnessVerdict
    """
    if now is None:
        now = datetime.now(timezone.utc)
    days = days_since(remote.last_updated_at, now)

    if local.digest:
        if remote.digest_available and remote.digest:
            if local.digest != remote.digest:
                return FreshnessVerdict(True, Rationale.DIGEST_MISMATCH, days)
            return FreshnessVerdict(False, Rationale.DIGEST_MATCH, days)
        return FreshnessVerdict(False, Rationale.LOCAL_DIGEST_REMOTE_UNKNOWN, days)

    if remote.last_updated_at is None or local.created_at is None:
        return FreshnessVerdict(False, Rationale.TIME_WITHIN_THRESHOLD, days)

    if remote.last_updated_at - local.created_at > TIME_SKEW_TOLERANCE:
        return FreshnessVerdict(True, Rationale.TIME_THRESHOLD_EXCEEDED, days)
    return FreshnessVerdict(False, Rationale.TIME_WITHIN_THRESHOLD, days)
