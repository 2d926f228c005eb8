"""
Kubernetes client wrapper for the runner scale set controller.

This module wraps the Kubernetes Python client for the ``actions.github.com``
custom resources the controller reads and writes. Raw API dictionaries are
parsed into the models of ``models.runner`` and API failures are translated
into the exception types below, with 404 kept distinguishable so callers can
treat "already gone" as success.
"""

import asyncio
import base64
from typing import Any, Callable, Dict, Iterator, List, Optional, Set

import structlog
from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from ..models.runner import (
    GROUP,
    RUNNER_PLURAL,
    RUNNER_SET_PLURAL,
    VERSION,
    EphemeralRunner,
    EphemeralRunnerSet,
    EphemeralRunnerSetStatus,
)


WATCH_CONNECT_TIMEOUT = 10
WATCH_READ_MARGIN = 30


class KubernetesClientError(Exception):
    """Raised when a Kubernetes API call fails."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(KubernetesClientError):
    """Raised when the requested object does not exist."""
    pass


def _translate(error: ApiException, action: str) -> KubernetesClientError:
    message = f"{action} failed: {error.status} {error.reason}"
    if error.status == 404:
        return NotFoundError(message, status=404)
    return KubernetesClientError(message, status=error.status)


class RunnerKubernetesClient:
    """
    Kubernetes client for runner sets and their ephemeral runners.

    Every read goes to the API server; nothing is cached between calls so
    that the reconciler always sees fresh runner status.
    """

    def __init__(self,
                 logger: Any = None,
                 custom_api: Optional[client.CustomObjectsApi] = None,
                 core_api: Optional[client.CoreV1Api] = None) -> None:
        """
        Initialize the client.

        Args:
            logger: Structured logger instance
            custom_api: CustomObjectsApi to use (created if omitted)
            core_api: CoreV1Api to use (created if omitted)
        """
        self.logger = (logger or structlog.get_logger()).bind(component="k8s_client")
        self.custom_api = custom_api or client.CustomObjectsApi()
        self.core_api = core_api or client.CoreV1Api()
        self._operation_counts: Dict[str, int] = {}
        self._watches: Set[watch.Watch] = set()

    async def _call(self, operation: str, action: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        try:
            result = await asyncio.to_thread(fn, **kwargs)
        except ApiException as e:
            raise _translate(e, action) from e
        self._operation_counts[operation] = self._operation_counts.get(operation, 0) + 1
        return result

    async def get_runner_set(self, namespace: str, name: str) -> EphemeralRunnerSet:
        """
        Get a runner set.

        Raises:
            NotFoundError: If the runner set does not exist
        """
        obj = await self._call(
            "runner_set_get",
            f"get {RUNNER_SET_PLURAL} {namespace}/{name}",
            self.custom_api.get_namespaced_custom_object,
            group=GROUP,
            version=VERSION,
            namespace=namespace,
            plural=RUNNER_SET_PLURAL,
            name=name,
        )
        return EphemeralRunnerSet.model_validate(obj)

    async def list_runners(self, namespace: str) -> List[EphemeralRunner]:
        """List all ephemeral runners in a namespace."""
        response = await self._call(
            "runner_list",
            f"list {RUNNER_PLURAL} in {namespace}",
            self.custom_api.list_namespaced_custom_object,
            group=GROUP,
            version=VERSION,
            namespace=namespace,
            plural=RUNNER_PLURAL,
        )
        return [EphemeralRunner.model_validate(item) for item in response.get("items", [])]

    async def list_owned_runners(self, runner_set: EphemeralRunnerSet) -> List[EphemeralRunner]:
        """
        List the ephemeral runners controlled by a runner set.

        Args:
            runner_set: Owner runner set

        Returns:
            Runners whose controller reference points at the runner set
        """
        runners = await self.list_runners(runner_set.namespace)
        owned = [runner for runner in runners if runner_set.owns(runner)]
        self.logger.debug(
            "Listed owned runners",
            runner_set=runner_set.name,
            total_runners=len(runners),
            owned_runners=len(owned)
        )
        return owned

    async def create_runner(self, body: Dict[str, Any]) -> EphemeralRunner:
        """Create an ephemeral runner from an API body."""
        namespace = body["metadata"]["namespace"]
        obj = await self._call(
            "runner_create",
            f"create {RUNNER_PLURAL} in {namespace}",
            self.custom_api.create_namespaced_custom_object,
            group=GROUP,
            version=VERSION,
            namespace=namespace,
            plural=RUNNER_PLURAL,
            body=body,
        )
        return EphemeralRunner.model_validate(obj)

    async def delete_runner(self, runner: EphemeralRunner) -> None:
        """
        Delete an ephemeral runner.

        Raises:
            NotFoundError: If the runner is already gone
        """
        await self._call(
            "runner_delete",
            f"delete {RUNNER_PLURAL} {runner.metadata.namespace}/{runner.name}",
            self.custom_api.delete_namespaced_custom_object,
            group=GROUP,
            version=VERSION,
            namespace=runner.metadata.namespace,
            plural=RUNNER_PLURAL,
            name=runner.name,
        )

    async def patch_runner_status(self, namespace: str, name: str, status: Dict[str, Any]) -> EphemeralRunner:
        """Merge-patch the status subresource of an ephemeral runner."""
        obj = await self._call(
            "runner_status_patch",
            f"patch {RUNNER_PLURAL}/status {namespace}/{name}",
            self.custom_api.patch_namespaced_custom_object_status,
            group=GROUP,
            version=VERSION,
            namespace=namespace,
            plural=RUNNER_PLURAL,
            name=name,
            body={"status": status},
        )
        return EphemeralRunner.model_validate(obj)

    async def patch_runner_set_spec(self, namespace: str, name: str, replicas: int, patch_id: int) -> EphemeralRunnerSet:
        """Merge-patch the desired replicas and patch id of a runner set."""
        obj = await self._call(
            "runner_set_spec_patch",
            f"patch {RUNNER_SET_PLURAL} {namespace}/{name}",
            self.custom_api.patch_namespaced_custom_object,
            group=GROUP,
            version=VERSION,
            namespace=namespace,
            plural=RUNNER_SET_PLURAL,
            name=name,
            body={"spec": {"replicas": replicas, "patchID": patch_id}},
        )
        return EphemeralRunnerSet.model_validate(obj)

    async def patch_runner_set_status(self,
                                      runner_set: EphemeralRunnerSet,
                                      status: EphemeralRunnerSetStatus) -> None:
        """Merge-patch the status subresource of a runner set."""
        await self._call(
            "runner_set_status_patch",
            f"patch {RUNNER_SET_PLURAL}/status {runner_set.namespace}/{runner_set.name}",
            self.custom_api.patch_namespaced_custom_object_status,
            group=GROUP,
            version=VERSION,
            namespace=runner_set.namespace,
            plural=RUNNER_SET_PLURAL,
            name=runner_set.name,
            body={"status": status.to_api()},
        )

    async def patch_runner_set_finalizers(self,
                                          runner_set: EphemeralRunnerSet,
                                          finalizers: List[str]) -> None:
        """
        Replace the finalizer list of a runner set.

        The patch carries the observed resource version, so a concurrent
        update makes it fail with a conflict instead of dropping a
        finalizer written by someone else.
        """
        await self._call(
            "runner_set_finalizer_patch",
            f"patch {RUNNER_SET_PLURAL} {runner_set.namespace}/{runner_set.name}",
            self.custom_api.patch_namespaced_custom_object,
            group=GROUP,
            version=VERSION,
            namespace=runner_set.namespace,
            plural=RUNNER_SET_PLURAL,
            name=runner_set.name,
            body={
                "metadata": {
                    "finalizers": finalizers,
                    "resourceVersion": runner_set.metadata.resource_version,
                }
            },
        )

    async def read_secret_data(self, namespace: str, name: str) -> Dict[str, str]:
        """
        Read and decode the data of a secret.

        Returns:
            Secret keys mapped to their decoded string values
        """
        secret = await self._call(
            "secret_get",
            f"get secret {namespace}/{name}",
            self.core_api.read_namespaced_secret,
            name=name,
            namespace=namespace,
        )
        data = secret.data or {}
        return {key: base64.b64decode(value).decode("utf-8") for key, value in data.items()}

    def watch_runner_sets(self, namespace: Optional[str], timeout_seconds: int) -> Iterator[Dict[str, Any]]:
        """Stream watch events of runner sets (blocking generator)."""
        return self._watch(RUNNER_SET_PLURAL, namespace, timeout_seconds)

    def watch_runners(self, namespace: Optional[str], timeout_seconds: int) -> Iterator[Dict[str, Any]]:
        """Stream watch events of ephemeral runners (blocking generator)."""
        return self._watch(RUNNER_PLURAL, namespace, timeout_seconds)

    def _watch(self, plural: str, namespace: Optional[str], timeout_seconds: int) -> Iterator[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {
            "group": GROUP,
            "version": VERSION,
            "plural": plural,
            "timeout_seconds": timeout_seconds,
            # A dead connection must not outlive the server-side timeout
            "_request_timeout": (WATCH_CONNECT_TIMEOUT, timeout_seconds + WATCH_READ_MARGIN),
        }
        if namespace:
            func = self.custom_api.list_namespaced_custom_object
            kwargs["namespace"] = namespace
        else:
            func = self.custom_api.list_cluster_custom_object

        watcher = watch.Watch()
        self._watches.add(watcher)
        try:
            yield from watcher.stream(func, **kwargs)
        finally:
            self._watches.discard(watcher)

    def stop_watches(self) -> None:
        """Ask every open watch stream to end after its current event."""
        for watcher in list(self._watches):
            watcher.stop()

    async def close(self) -> None:
        """Log operation statistics on shutdown."""
        self.logger.info(
            "Kubernetes client closing",
            operation_counts=self._operation_counts
        )

    def get_operation_stats(self) -> Dict[str, int]:
        """Get operation statistics for monitoring."""
        return self._operation_counts.copy()
