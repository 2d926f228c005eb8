"""
Runner Scale Set Controller for Kubernetes.

An autoscaling controller for ephemeral, single-job GitHub Actions runners
running as ``EphemeralRunner`` custom resources.

This package implements:
- Desired replica calculation from job message batches
- Convergence of the runner fleet toward the desired count
- Safe scale-down that deregisters idle runners and spares busy ones
- Prometheus metrics and structured logging
"""

__version__ = "0.1.0"

from .controllers.desired_replicas import DesiredReplicaCalculator
from .controllers.runner_set_controller import EphemeralRunnerSetController
from .controllers.scale_set_worker import ScaleSetWorker
from .models.runner import EphemeralRunner, EphemeralRunnerSet, RunnerPhase

__all__ = [
    "DesiredReplicaCalculator",
    "EphemeralRunnerSetController",
    "ScaleSetWorker",
    "EphemeralRunner",
    "EphemeralRunnerSet",
    "RunnerPhase",
]
