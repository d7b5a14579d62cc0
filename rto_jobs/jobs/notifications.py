"""
Operator notifications.

In-app notification rows for every active operator of a role. Who holds the
role is owned by the user directory (an external collaborator), so it is
injected as an `OperatorDirectory`.
"""

from __future__ import annotations

from typing import Protocol, Sequence

import structlog

from rto_jobs.db.client import Database
from rto_jobs.db.models import Notification
from rto_jobs.kernel.time import Clock, utc_now

logger = structlog.get_logger()


class OperatorDirectory(Protocol):
    async def active_operator_ids(self, role: str) -> Sequence[str]: ...


class StaticOperatorDirectory:
    """Operator ids taken from configuration."""

    def __init__(self, user_ids: Sequence[str]) -> None:
        self._user_ids = list(user_ids)

    async def active_operator_ids(self, role: str) -> Sequence[str]:
        return list(self._user_ids)


class OperatorNotifier:
    def __init__(
        self,
        db: Database,
        directory: OperatorDirectory,
        *,
        role: str = "SystemAdmin",
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._directory = directory
        self._role = role
        self._clock = clock

    async def notify(self, *, title: str, messages: Sequence[str]) -> int:
        """Create one notification per operator per message. Returns rows written."""
        operator_ids = list(await self._directory.active_operator_ids(self._role))
        if not operator_ids or not messages:
            return 0

        now = self._clock()
        async with self._db.session() as session:
            session.add_all(
                [
                    Notification(
                        user_id=user_id,
                        type="in-app",
                        title=title,
                        message=message,
                        read=False,
                        created_at=now,
                    )
                    for user_id in operator_ids
                    for message in messages
                ]
            )

        written = len(operator_ids) * len(messages)
        logger.info("Operators notified", title=title, role=self._role, count=written)
        return written

    async def notify_permanent_failure(self, *, job_type: str, job_id: str, attempts_made: int) -> None:
        """Tell operators a job landed in the dead-letter store.

        Best-effort: a failed notification must never undo the dead-letter move.
        """
        try:
            await self.notify(
                title="Job Permanently Failed",
                messages=[
                    f'Job "{job_type}" has failed permanently after {attempts_made} attempts. '
                    "It has been moved to the dead letter queue for investigation."
                ],
            )
        except Exception as exc:
            logger.error(
                "Failed to notify operators of permanent failure",
                job_id=job_id,
                job_type=job_type,
                error=str(exc),
            )
