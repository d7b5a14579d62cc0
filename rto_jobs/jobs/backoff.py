from __future__ import annotations

from datetime import timedelta

DEFAULT_BASE = timedelta(seconds=1)
DEFAULT_CAP = timedelta(seconds=300)


def backoff(
    attempt: int,
    *,
    base: timedelta = DEFAULT_BASE,
    cap: timedelta = DEFAULT_CAP,
) -> timedelta:
    """Retry delay after `attempt` failed attempts: `base * 2**attempt`, clamped to `cap`.

    attempt=1 -> 2s, attempt=2 -> 4s, attempt=3 -> 8s with the default base.
    """
    exponent = min(62, max(0, int(attempt)))
    seconds = base.total_seconds() * (2 ** exponent)
    return timedelta(seconds=min(cap.total_seconds(), seconds))
