"""
Data models for the runner scale set controller.

Custom resource models parsed from the Kubernetes API and the validated
controller configuration.
"""

from .config import ControllerConfiguration, GitHubConfiguration, ScaleSetWorkerConfiguration
from .runner import EphemeralRunner, EphemeralRunnerSet, RunnerPhase

__all__ = [
    "ControllerConfiguration",
    "GitHubConfiguration",
    "ScaleSetWorkerConfiguration",
    "EphemeralRunner",
    "EphemeralRunnerSet",
    "RunnerPhase",
]
