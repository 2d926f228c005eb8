"""
Runner scale set controller package.

This package contains the desired replica calculator, the fleet classifier,
the runner set reconciler and the work queue that drives it.
"""

from .desired_replicas import DesiredReplicaCalculator
from .runner_set_controller import EphemeralRunnerSetController, ReconcileError, TeardownState
from .runner_state import RunnerState, RunnerStepper
from .scale_set_worker import JobStarted, ScaleSetWorker
from .work_queue import ReconcileQueue

__all__ = [
    "DesiredReplicaCalculator",
    "EphemeralRunnerSetController",
    "JobStarted",
    "ReconcileError",
    "ReconcileQueue",
    "RunnerState",
    "RunnerStepper",
    "ScaleSetWorker",
    "TeardownState",
]
