"""Partition engine results into created, deleted, moved and modified."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Tuple

from .models import EditResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResultsClassification:
    created: Tuple[EditResult, ...] = ()
    deleted: Tuple[EditResult, ...] = ()
    moved: Tuple[EditResult, ...] = ()
    modified: Tuple[EditResult, ...] = ()
    discarded: int = 0

    @property
    def ordered(self) -> List[EditResult]:
        """All kept results in patch order."""
        return [*self.created, *self.deleted, *self.moved, *self.modified]

    @property
    def time_saved(self) -> timedelta:
        return sum((r.time_saved for r in self.ordered), timedelta(0))

    @property
    def is_empty(self) -> bool:
        return not self.ordered

    def __len__(self) -> int:
        return len(self.ordered)


def classify(results: Iterable[EditResult]) -> ResultsClassification:
    """Sort each result into exactly one category, preserving input order.

    Results with neither side, or with the same path and no difference, are
    discarded.
    """
    created: List[EditResult] = []
    deleted: List[EditResult] = []
    moved: List[EditResult] = []
    modified: List[EditResult] = []
    discarded = 0

    for result in results:
        before, after = result.before, result.after
        if before is None and after is None:
            discarded += 1
        elif before is None:
            created.append(result)
        elif after is None:
            deleted.append(result)
        elif before.source_path != after.source_path:
            moved.append(result)
        elif result.diff():
            modified.append(result)
        else:
            discarded += 1

    if discarded:
        logger.debug("Discarded %d result(s) without changes", discarded)
    return ResultsClassification(tuple(created), tuple(deleted), tuple(moved), tuple(modified), discarded)


def format_duration(duration: timedelta) -> str:
    """Render like ``1h 5m 30s``; zero units are omitted, zero is ``0s``."""
    total = int(duration.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds or not parts:
        parts.append(f"{seconds}s")
    return " ".join(parts)
