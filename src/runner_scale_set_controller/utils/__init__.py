"""
Utility modules for the runner scale set controller.

This package contains the Kubernetes client wrapper for the runner custom
resources and the GitHub Actions service client.
"""

from .actions_client import ActionsClientPool, ActionsError, ActionsServiceClient
from .kubernetes_client import KubernetesClientError, NotFoundError, RunnerKubernetesClient

__all__ = [
    "ActionsClientPool",
    "ActionsError",
    "ActionsServiceClient",
    "KubernetesClientError",
    "NotFoundError",
    "RunnerKubernetesClient",
]
