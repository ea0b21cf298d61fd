"""
Structured JSON logging for stage transitions and backfill runs.

One flat, queryable record per stage move and per backfill run, on a
dedicated logger separate from operational logs.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

_trace_logger: Optional[logging.Logger] = None


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        # record.msg is already a dict for trace records
        if isinstance(record.msg, dict):
            return json.dumps(record.msg, default=str, ensure_ascii=False)
        return super().format(record)


def _get_trace_logger() -> logging.Logger:
    global _trace_logger
    if _trace_logger is not None:
        return _trace_logger

    _trace_logger = logging.getLogger("stage_engine.trace")
    _trace_logger.setLevel(logging.INFO)
    _trace_logger.propagate = False  # Don't bubble to root logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.INFO)
    handler.setFormatter(JsonFormatter())
    _trace_logger.addHandler(handler)

    return _trace_logger


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def log_stage_transition(
    *,
    job_id: str,
    from_stage: str,
    to_stage: str,
    trigger: str,
    status: str,
    changed_by: Optional[str] = None,
) -> None:
    record: dict[str, Any] = {
        "type": "stage_transition",
        "ts": _ts(),
        "job_id": job_id,
        "from": from_stage,
        "to": to_stage,
        "trigger": trigger,
        "status": status,
    }
    if changed_by is not None:
        record["changed_by"] = changed_by
    _get_trace_logger().info(record)


def log_backfill_run(
    *,
    job_id: Optional[str],
    jobs_processed: int,
    jobs_updated: int,
    total_steps_completed: int,
    error_count: int,
    truncated: bool,
) -> None:
    _get_trace_logger().info({
        "type": "backfill_run",
        "ts": _ts(),
        "job_id": job_id,
        "jobs_processed": jobs_processed,
        "jobs_updated": jobs_updated,
        "total_steps_completed": total_steps_completed,
        "errors": error_count,
        "truncated": truncated,
    })
