from __future__ import annotations

from collections import Counter
from typing import Any

from trackbatch.models import KNOWN_STATUSES, STATUS_FAILED, JobRecord
from trackbatch.registry import JobRegistry
from trackbatch.utils import utc_now_iso


def summarize_records(records: tuple[JobRecord, ...] | list[JobRecord]) -> dict[str, Any]:
    counter = Counter(record.status for record in records)
    by_status = {status: int(counter.get(status, 0)) for status in KNOWN_STATUSES}
    unknown = {
        status or "<empty>": int(count)
        for status, count in sorted(counter.items())
        if status not in KNOWN_STATUSES
    }
    return {
        "generated_at": utc_now_iso(),
        "total": len(records),
        "by_status": by_status,
        "unknown_statuses": unknown,
        "eligible": sum(1 for record in records if record.eligible),
        "failed_settings_files": [
            record.settings_file for record in records if record.status == STATUS_FAILED
        ],
        "jobs": [record.to_json() for record in records],
    }


def registry_status(registry: JobRegistry) -> dict[str, Any]:
    records = registry.load()
    summary = summarize_records(records)
    summary["registry"] = str(registry.path)
    return summary
