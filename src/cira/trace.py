"""Trace writers for drain and pull runs."""

import json
from pathlib import Path

from .models.reports import PullReport, SyncReport
from .paths import DataPaths


def write_drain_trace(report: SyncReport, run_id: str, paths: DataPaths) -> Path:
    """Write trace JSON for one outbox drain.

    Written to: traces/drain/YYYY-MM-DD/drain_<run_id>_<HHMMSSffffff>.json
    """
    finished = report.finished_at or report.started_at
    trace_dir = paths.trace_folder("drain", finished)
    trace_dir.mkdir(parents=True, exist_ok=True)

    duration_ms = int((finished - report.started_at).total_seconds() * 1000)
    trace_data = {
        "run_id": run_id,
        "started_at": report.started_at.isoformat(),
        "finished_at": finished.isoformat(),
        "duration_ms": duration_ms,
        "counts": {
            "synced": report.synced_count,
            "failed": report.failed_count,
            "skipped": report.skipped_count,
        },
        "outcomes": [o.model_dump(mode="json") for o in report.outcomes],
    }

    trace_path = trace_dir / f"drain_{run_id}_{finished.strftime('%H%M%S%f')}.json"
    trace_path.write_text(json.dumps(trace_data, indent=2), encoding="utf-8")
    return trace_path


def write_pull_trace(report: PullReport, run_id: str, paths: DataPaths, finished_at) -> Path:
    """Write trace JSON for one pull of a single entity type."""
    trace_dir = paths.trace_folder("pull", finished_at)
    trace_dir.mkdir(parents=True, exist_ok=True)

    trace_data = {
        "run_id": run_id,
        "timestamp": finished_at.isoformat(),
        **report.model_dump(mode="json"),
    }

    stamp = finished_at.strftime("%H%M%S%f")
    trace_path = trace_dir / f"pull_{report.entity_type}_{run_id}_{stamp}.json"
    trace_path.write_text(json.dumps(trace_data, indent=2), encoding="utf-8")
    return trace_path
