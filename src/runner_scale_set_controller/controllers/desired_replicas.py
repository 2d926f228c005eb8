"""
Desired replica calculation for a runner scale set.

The listener feeds every processed message batch into a
``DesiredReplicaCalculator`` and patches the result onto the runner set.
The calculator is a plain state machine: no I/O, one instance per runner
set, driven from a single message loop.
"""

import math

import structlog


class DesiredReplicaCalculator:
    """
    Turns job message batches into a bounded desired runner count.

    Each call issues a new patch id. The reconciler only acts on a patch id
    its fleet has not adopted yet, so an ever-increasing sequence is what
    makes a repeated decision (including an empty batch) get re-applied.
    """

    def __init__(self,
                 min_runners: int = 0,
                 max_runners: int = 2**31 - 1,
                 scale_up_factor: float = 1.0,
                 logger=None) -> None:
        if min_runners < 0 or min_runners > max_runners:
            raise ValueError("require 0 <= min_runners <= max_runners")
        if scale_up_factor < 1:
            raise ValueError("scale_up_factor must be at least 1")

        self.min_runners = min_runners
        self.max_runners = max_runners
        self.scale_up_factor = scale_up_factor
        self.logger = (logger or structlog.get_logger()).bind(component="desired_replicas")

        # -1 means no decision has been issued yet
        self.last_patch = -1
        self.patch_seq = -1

    def compute(self, acquired: int, completed: int) -> int:
        """
        Compute the desired runner count for one message batch.

        Args:
            acquired: Jobs assigned to the scale set in this batch
            completed: Jobs completed by the scale set in this batch

        Returns:
            The patch id identifying this decision
        """
        desired = self.min_runners + math.ceil(acquired * self.scale_up_factor)
        desired = max(self.min_runners, min(desired, self.max_runners))

        if acquired == 0 and completed == 0:
            # Empty batch: keep the last decision. desired is never below
            # min_runners, so a positive floor is re-asserted here.
            desired = max(self.last_patch, desired)

        self.patch_seq += 1
        self.last_patch = desired

        self.logger.info(
            "Calculated target runner count",
            acquired=acquired,
            completed=completed,
            decision=desired,
            patch_id=self.patch_seq,
            min=self.min_runners,
            max=self.max_runners,
            scale_up_factor=self.scale_up_factor
        )
        return self.patch_seq
