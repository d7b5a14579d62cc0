"""In-memory paged upstream for reconciliation tests."""

from __future__ import annotations

import math
from typing import Any

from rto_jobs.sync.reconciliation import UpstreamPage


class FakeUpstream:
    """Serves `records` page by page and remembers which pages were asked for."""

    def __init__(
        self,
        records: list[dict[str, Any]],
        *,
        fail_on_page: int | None = None,
        report_total_pages: bool = True,
    ) -> None:
        self.records = list(records)
        self.fail_on_page = fail_on_page
        self.report_total_pages = report_total_pages
        self.requested_pages: list[int] = []

    async def fetch(self, page: int, per_page: int) -> UpstreamPage:
        self.requested_pages.append(page)
        if self.fail_on_page == page:
            raise RuntimeError(f"upstream unavailable on page {page}")

        start = (page - 1) * per_page
        items = self.records[start : start + per_page]
        return UpstreamPage(
            items=items,
            page=page,
            per_page=per_page,
            total=len(self.records) if self.report_total_pages else None,
            total_pages=max(1, math.ceil(len(self.records) / per_page)) if self.report_total_pages else None,
        )


def trainer(index: int, **overrides: Any) -> dict[str, Any]:
    record = {
        "id": f"tr-{index}",
        "firstName": f"Trainer{index}",
        "lastName": "Smith",
        "email": f"trainer{index}@example.edu.au",
        "status": "active",
    }
    record.update(overrides)
    return record
