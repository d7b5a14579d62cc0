from __future__ import annotations

from uuid import uuid4

DEAD_LETTER_PREFIX = "dlq-"
RETRY_PREFIX = "retry-"


def dead_letter_id(job_id: str) -> str:
    """Dead-letter ids are namespaced so they never collide with queue ids."""
    return f"{DEAD_LETTER_PREFIX}{job_id}"


def replay_id(dead_letter_item_id: str) -> str:
    """Fresh queue id for a dead-letter replay.

    Keeps the original id readable for operators while staying unique across
    repeated replays of the same job.
    """
    original = dead_letter_item_id.removeprefix(DEAD_LETTER_PREFIX)
    return f"{RETRY_PREFIX}{original}-{uuid4().hex[:8]}"
