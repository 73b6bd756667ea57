"""Batching and parent/child progress arithmetic."""

from typing import Any, Dict, List, Sequence, TypeVar

from orchestrator.models import Job, JobStatus

T = TypeVar("T")


def clamp_progress(value: float) -> int:
    return max(0, min(100, int(round(value))))


def batch_progress(done: int, total: int) -> int:
    """Progress of a batch after ``done`` of ``total`` items."""
    if total <= 0:
        return 100
    return clamp_progress(done / total * 100)


def split_batches(items: Sequence[T], size: int) -> List[List[T]]:
    if size < 1:
        raise ValueError("batch size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def aggregate_progress(child_progress: Sequence[int], expected: int) -> int:
    """Mean progress over ``max(expected, len(child_progress))`` slots.

    Children that were expected but have not been created yet count as 0.
    """
    slots = max(expected, len(child_progress))
    if slots == 0:
        return 0
    return clamp_progress(sum(clamp_progress(p) for p in child_progress) / slots)


def children_settled(children: Sequence[Job], expected: int) -> bool:
    """Every expected child exists and has reached a final status."""
    return len(children) >= expected and all(child.is_terminal for child in children)


def summarize_children(children: Sequence[Job]) -> Dict[str, Any]:
    """Parent result built from its batches' results."""
    completed = [c for c in children if c.status == JobStatus.COMPLETED.value]
    failed = [c for c in children if c.status == JobStatus.FAILED.value]
    processed = 0
    failed_items = 0
    errors: List[str] = []
    for child in completed:
        result = child.result or {}
        processed += int(result.get("processed", 0))
        failed_items += int(result.get("failed", 0))
        errors.extend(result.get("errors", []))
    for child in failed:
        batch = (child.data or {}).get("batchNumber", "?")
        errors.append(f"batch {batch}: {child.failed_reason or 'failed'}")
        failed_items += len((child.data or {}).get("productIds", []))
    return {
        "totalBatches": len(children),
        "completedBatches": len(completed),
        "failedBatches": len(failed),
        "processed": processed,
        "failed": failed_items,
        "errors": errors,
    }
