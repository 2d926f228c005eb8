"""
Fleet classification for ephemeral runner sets.

The partition is a read-time projection of a freshly listed fleet; it is
rebuilt on every reconcile and never kept across reconciles.
"""

from datetime import datetime, timezone
from typing import Iterable, Iterator, List

from ..models.runner import EphemeralRunner, RunnerPhase


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class RunnerState:
    """
    Ephemeral runners partitioned into lifecycle buckets.

    Buckets are disjoint. ``latest_patch_id`` is the highest parseable
    patch-id annotation seen across every runner, including deleting ones,
    and 0 when none carries one.
    """

    def __init__(self, runners: Iterable[EphemeralRunner]) -> None:
        self.pending: List[EphemeralRunner] = []
        self.running: List[EphemeralRunner] = []
        self.finished: List[EphemeralRunner] = []
        self.failed: List[EphemeralRunner] = []
        self.deleting: List[EphemeralRunner] = []
        self.latest_patch_id = 0

        for runner in runners:
            patch_id = runner.patch_id()
            if patch_id is not None and patch_id > self.latest_patch_id:
                self.latest_patch_id = patch_id

            if runner.is_deleting:
                self.deleting.append(runner)
            elif runner.status.phase == RunnerPhase.RUNNING:
                self.running.append(runner)
            elif runner.status.phase == RunnerPhase.SUCCEEDED:
                self.finished.append(runner)
            elif runner.status.phase == RunnerPhase.FAILED:
                self.failed.append(runner)
            else:
                # No phase yet means the runner's own reconciler has not
                # observed its pod.
                self.pending.append(runner)

    def scale_total(self) -> int:
        """Runners counted against the desired replicas (finished excluded)."""
        return len(self.pending) + len(self.running) + len(self.failed)

    def counts(self) -> dict:
        return {
            "pending": len(self.pending),
            "running": len(self.running),
            "finished": len(self.finished),
            "failed": len(self.failed),
            "deleting": len(self.deleting),
        }


def _created_at(runner: EphemeralRunner) -> datetime:
    created = runner.metadata.creation_timestamp
    if created is None:
        return _EPOCH
    if created.tzinfo is None:
        return created.replace(tzinfo=timezone.utc)
    return created


class RunnerStepper:
    """
    Scale-down candidates ordered oldest first.

    Pending and running runners are merged and sorted globally by creation
    timestamp; the sort is stable, so runners created at the same instant
    keep their listing order.
    """

    def __init__(self, *buckets: Iterable[EphemeralRunner]) -> None:
        merged: List[EphemeralRunner] = []
        for bucket in buckets:
            merged.extend(bucket)
        self.items = sorted(merged, key=_created_at)

    def __iter__(self) -> Iterator[EphemeralRunner]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)
