"""CSV export of a job's completed items."""

import csv
import io
import json
from typing import Any, AsyncIterator

from bulkops.jobs.models import Item, Job
from bulkops.jobs.types import ItemStatus
from bulkops.repositories.base import JobStore

BASE_COLUMNS = ["item_id", "position", "processed_at"]
RESULT_PREFIX = "result."
PAGE_SIZE = 500
ROWS_PER_CHUNK = 100


def export_filename(job: Job) -> str:
    return f"{job.kind.value}-{str(job.id)[:8]}-results.csv"


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(_cell(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def _columns(items: list[Item]) -> tuple[list[str], list[str]]:
    payload_keys: dict[str, None] = {}
    result_keys: dict[str, None] = {}
    for item in items:
        payload_keys.update(dict.fromkeys(item.payload))
        result_keys.update(dict.fromkeys(item.result or {}))
    return list(payload_keys), list(result_keys)


def _row(item: Item, payload_keys: list[str], result_keys: list[str]) -> list[str]:
    result = item.result or {}
    return (
        [
            str(item.id),
            str(item.position),
            item.processed_at.isoformat() if item.processed_at else "",
        ]
        + [_cell(item.payload.get(key)) for key in payload_keys]
        + [_cell(result.get(key)) for key in result_keys]
    )


async def iter_results_csv(store: JobStore, job: Job) -> AsyncIterator[str]:
    """Yield the CSV export in chunks: header first, then rows in claim order.

    Columns are the union of payload keys followed by the union of result
    keys (prefixed ``result.``), in first-seen order.
    """
    items: list[Item] = []
    offset = 0
    while True:
        page = await store.get_items(
            job_id=job.id, status=ItemStatus.COMPLETED, limit=PAGE_SIZE, offset=offset
        )
        items.extend(page)
        if len(page) < PAGE_SIZE:
            break
        offset += PAGE_SIZE

    payload_keys, result_keys = _columns(items)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(
        BASE_COLUMNS + payload_keys + [RESULT_PREFIX + key for key in result_keys]
    )

    for index, item in enumerate(items, start=1):
        writer.writerow(_row(item, payload_keys, result_keys))
        if index % ROWS_PER_CHUNK == 0:
            yield buffer.getvalue()
            buffer.seek(0)
            buffer.truncate(0)

    remainder = buffer.getvalue()
    if remainder:
        yield remainder
