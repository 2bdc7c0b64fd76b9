from __future__ import annotations

from collections import Counter
from datetime import timedelta
from decimal import Decimal

from ewaste_repairs.domain import RepairRequest, RepairStatus


def repair_turnaround(request: RepairRequest) -> timedelta | None:
    if request.completed_at is None:
        return None
    start = request.started_at or request.created_at
    if request.completed_at < start:
        return None
    return request.completed_at - start


def average_turnaround(requests: list[RepairRequest]) -> timedelta | None:
    durations = [d for d in map(repair_turnaround, requests) if d is not None]
    if not durations:
        return None
    return sum(durations, timedelta()) / len(durations)


def status_counts(requests: list[RepairRequest]) -> dict[str, int]:
    counter = Counter(r.status for r in requests)
    return {status.value: counter.get(status, 0) for status in RepairStatus}


def technician_summary(requests: list[RepairRequest]) -> dict[str, object]:
    completed = [r for r in requests if r.status == RepairStatus.COMPLETED]
    avg = average_turnaround(completed)
    revenue = sum(
        (r.estimated_cost for r in completed if r.estimated_cost is not None),
        Decimal("0"),
    )
    return {
        "total": len(requests),
        "byStatus": status_counts(requests),
        "completed": len(completed),
        "averageTurnaroundSeconds": int(avg.total_seconds()) if avg is not None else None,
        "completedEstimateTotal": float(revenue),
    }
