"""
Ephemeral runner set controller for Kubernetes.

This module implements the convergence loop of the runner scale set: it
drives the collection of ``EphemeralRunner`` resources owned by an
``EphemeralRunnerSet`` toward the desired replica count written by the
listener, deregistering idle runners from the Actions service before
deleting them and never reclaiming a runner that is executing a job.

Reconciliation is level-triggered. Watches on runner sets and runners only
enqueue the affected runner set; each pass re-lists the fleet and derives
everything from scratch.
"""

import asyncio
import threading
from enum import Enum
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple

import httpx
import structlog
from kubernetes import config
from prometheus_client import Counter, Gauge, start_http_server

from ..models.config import ControllerConfiguration
from ..models.runner import (
    LABEL_KEY_SCALE_SET_NAME,
    LABEL_KEY_SCALE_SET_NAMESPACE,
    RUNNER_SET_FINALIZER,
    RUNNER_SET_KIND,
    EphemeralRunner,
    EphemeralRunnerSet,
    EphemeralRunnerSetStatus,
)
from ..utils.actions_client import (
    ActionsClientPool,
    ActionsConfigurationError,
    ActionsError,
    ActionsService,
    GitHubAPIError,
    is_job_still_running,
    parse_github_config_url,
)
from ..utils.kubernetes_client import KubernetesClientError, NotFoundError, RunnerKubernetesClient
from .runner_state import RunnerState, RunnerStepper
from .work_queue import ReconcileQueue


_METRIC_LABELS = ["name", "namespace", "repository", "organization", "enterprise"]

PENDING_RUNNERS = Gauge(
    "gha_controller_pending_ephemeral_runners",
    "Number of ephemeral runners in a pending state.",
    _METRIC_LABELS
)
RUNNING_RUNNERS = Gauge(
    "gha_controller_running_ephemeral_runners",
    "Number of ephemeral runners in a running state.",
    _METRIC_LABELS
)
FAILED_RUNNERS = Gauge(
    "gha_controller_failed_ephemeral_runners",
    "Number of ephemeral runners in a failed state.",
    _METRIC_LABELS
)
RECONCILES = Counter(
    "gha_controller_reconciles",
    "Runner set reconcile passes",
    ["result"]
)

# Failures collected while acting on individual runners
_RUNNER_ERRORS = (
    ActionsError,
    ActionsConfigurationError,
    GitHubAPIError,
    KubernetesClientError,
    httpx.HTTPError,
)


class TeardownState(str, Enum):
    """Finalizer-gated lifecycle of a runner set."""

    ACTIVE = "active"
    DRAINING = "draining"
    REMOVABLE = "removable"


class ReconcileError(Exception):
    """Raised when one or more actions of a reconcile pass failed."""

    def __init__(self, errors: List[BaseException]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


def keys_for_event(kind: str, event: Dict[str, Any]) -> List[Tuple[str, str]]:
    """
    Map a watch event to the runner set keys it affects.

    Args:
        kind: ``"runner_sets"`` or ``"runners"``
        event: Watch event with a dict ``object``

    Returns:
        ``(namespace, name)`` keys of runner sets to reconcile
    """
    obj = event.get("object")
    if not isinstance(obj, dict):
        return []
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace", "")

    if kind == "runner_sets":
        return [(namespace, metadata.get("name", ""))]

    for owner in metadata.get("ownerReferences") or []:
        if owner.get("controller") and owner.get("kind") == RUNNER_SET_KIND:
            return [(namespace, owner.get("name", ""))]
    return []


class EphemeralRunnerSetController:
    """
    Reconciles ephemeral runner sets toward their desired replica count.

    One pass per runner set key; the work queue guarantees that a runner
    set is never reconciled by two workers at the same time, while distinct
    runner sets are reconciled concurrently.
    """

    def __init__(self,
                 config: ControllerConfiguration,
                 kubernetes_client: Optional[RunnerKubernetesClient] = None,
                 actions_clients: Optional[Any] = None) -> None:
        """
        Initialize the runner set controller.

        Args:
            config: Controller configuration
            kubernetes_client: Fleet store client (created on start if omitted)
            actions_clients: Object with ``async client_for(runner_set)``
                returning an Actions service client
        """
        self.config = config
        self.logger = structlog.get_logger().bind(
            component="runner_set_controller",
            namespace=config.namespace or "*"
        )

        self.k8s_client = kubernetes_client
        self.actions_clients = actions_clients
        self.queue: Optional[ReconcileQueue] = None

        self._running = False
        self._shutdown_event = asyncio.Event()

    async def reconcile(self, namespace: str, name: str) -> TeardownState:
        """
        Run one convergence pass for a runner set.

        Args:
            namespace: Runner set namespace
            name: Runner set name

        Returns:
            The teardown state observed in this pass

        Raises:
            ReconcileError: If any runner action or status update failed
            KubernetesClientError: If the runner set or fleet cannot be read
        """
        log = self.logger.bind(runner_set=f"{namespace}/{name}")

        try:
            runner_set = await self.k8s_client.get_runner_set(namespace, name)
        except NotFoundError:
            log.debug("Runner set not found, nothing to reconcile")
            return TeardownState.REMOVABLE

        if runner_set.is_deleting:
            if not runner_set.has_finalizer():
                return TeardownState.REMOVABLE
            return await self._teardown(runner_set, log)

        if not runner_set.has_finalizer():
            log.info("Adding finalizer")
            await self.k8s_client.patch_runner_set_finalizers(
                runner_set,
                runner_set.metadata.finalizers + [RUNNER_SET_FINALIZER]
            )
            log.info("Successfully added finalizer")
            return TeardownState.ACTIVE

        runners = await self.k8s_client.list_owned_runners(runner_set)
        state = RunnerState(runners)
        log.info("Ephemeral runner counts", **state.counts())
        self._publish_metrics(runner_set, state, log)

        errors: List[BaseException] = []
        total = state.scale_total()
        replicas = runner_set.spec.replicas
        patch_id = runner_set.spec.patch_id

        # Patch id 0 is never considered adopted: it is the first decision
        # of a listener and must always be acted upon.
        if patch_id == 0 or patch_id != state.latest_patch_id:
            log.info("Scaling comparison", current=total, desired=replicas, patch_id=patch_id)
            if total < replicas:
                errors.extend(await self._create_runners(runner_set, replicas - total, log))
            elif total > replicas:
                errors.extend(await self._delete_idle_runners(runner_set, state, total - replicas, log))
        else:
            log.debug("Latest patch already adopted by the fleet", patch_id=patch_id)

        errors.extend(await self._delete_done_runners(state.finished + state.failed, log))

        desired_status = EphemeralRunnerSetStatus(
            current_replicas=total,
            pending_ephemeral_runners=len(state.pending),
            running_ephemeral_runners=len(state.running),
            failed_ephemeral_runners=len(state.failed),
        )
        if runner_set.status != desired_status:
            log.info("Updating status with current runners count", count=total)
            try:
                await self.k8s_client.patch_runner_set_status(runner_set, desired_status)
            except NotFoundError:
                pass
            except KubernetesClientError as e:
                log.error("Failed to update status with current runners count", error=str(e))
                errors.append(e)

        if errors:
            raise ReconcileError(errors)
        return TeardownState.ACTIVE

    async def _teardown(self, runner_set: EphemeralRunnerSet, log: Any) -> TeardownState:
        """Drain the fleet of a deleted runner set, then release its finalizer."""
        log.info("Deleting resources")
        state = await self._drain(runner_set, log)
        if state is TeardownState.DRAINING:
            log.info("Waiting for resources to be deleted")
            return state

        log.info("Removing finalizer")
        finalizers = [f for f in runner_set.metadata.finalizers if f != RUNNER_SET_FINALIZER]
        try:
            await self.k8s_client.patch_runner_set_finalizers(runner_set, finalizers)
        except NotFoundError:
            pass
        log.info("Successfully removed finalizer after cleanup")
        return state

    async def _drain(self, runner_set: EphemeralRunnerSet, log: Any) -> TeardownState:
        runners = await self.k8s_client.list_owned_runners(runner_set)
        if not runners:
            log.info("All ephemeral runners are deleted")
            return TeardownState.REMOVABLE

        state = RunnerState(runners)
        log.info("Clean up runner counts", **state.counts())

        errors = await self._delete_done_runners(state.finished + state.failed, log)
        if errors:
            raise ReconcileError(errors)

        active = state.pending + state.running
        if not active:
            return TeardownState.DRAINING

        idle = [runner for runner in active if self._is_idle(runner, log)]
        if not idle:
            return TeardownState.DRAINING

        try:
            actions_client = await self.actions_clients.client_for(runner_set)
        except _RUNNER_ERRORS as e:
            log.error("Failed to create actions client for runner set", error=str(e))
            raise ReconcileError([e]) from e

        for runner in idle:
            log.info("Removing the ephemeral runner from the service", runner=runner.name)
            try:
                await self._remove_runner(runner, actions_client, log)
            except _RUNNER_ERRORS as e:
                errors.append(e)

        if errors:
            log.error("Failed to remove ephemeral runners from the service", errors=len(errors))
            raise ReconcileError(errors)
        return TeardownState.DRAINING

    async def _create_runners(self, runner_set: EphemeralRunnerSet, count: int, log: Any) -> List[BaseException]:
        """Create ``count`` runners, collecting failures instead of stopping."""
        log.info("Creating new ephemeral runners (scale up)", count=count)
        errors: List[BaseException] = []
        for index in range(count):
            body = runner_set.new_runner_body()
            try:
                created = await self.k8s_client.create_runner(body)
            except KubernetesClientError as e:
                log.error("Failed to create ephemeral runner", progress=index + 1, total=count, error=str(e))
                errors.append(e)
                continue
            log.info("Created new ephemeral runner", runner=created.name, progress=index + 1, total=count)
        return errors

    async def _delete_idle_runners(self,
                                   runner_set: EphemeralRunnerSet,
                                   state: RunnerState,
                                   count: int,
                                   log: Any) -> List[BaseException]:
        """
        Deregister and delete up to ``count`` idle runners, oldest first.

        Only runners that registered with the Actions service and carry no
        job request are candidates, so fewer than ``count`` may be removed.
        The remainder is retried on the next pass, which the runner status
        updates will trigger.
        """
        stepper = RunnerStepper(state.pending, state.running)
        if not len(stepper):
            log.info("No pending or running ephemeral runners to scale down")
            return []

        log.info("Deleting ephemeral runners (scale down)", count=count)
        try:
            actions_client = await self.actions_clients.client_for(runner_set)
        except _RUNNER_ERRORS as e:
            log.error("Failed to create actions client for runner set", error=str(e))
            return [e]

        errors: List[BaseException] = []
        deleted = 0
        for runner in stepper:
            if not self._is_idle(runner, log):
                continue

            log.info("Removing the idle ephemeral runner", runner=runner.name)
            try:
                removed = await self._remove_runner(runner, actions_client, log)
            except _RUNNER_ERRORS as e:
                log.error("Failed to remove idle ephemeral runner", runner=runner.name, error=str(e))
                errors.append(e)
                continue
            if not removed:
                continue

            deleted += 1
            if deleted == count:
                break

        return errors

    @staticmethod
    def _is_idle(runner: EphemeralRunner, log: Any) -> bool:
        """Only registered runners without a job request may be reclaimed."""
        if not runner.is_registered:
            log.info("Skipping ephemeral runner since it is not registered yet", runner=runner.name)
            return False
        if runner.has_job:
            log.info(
                "Skipping ephemeral runner since it is running a job",
                runner=runner.name,
                job_request_id=runner.status.job_request_id
            )
            return False
        return True

    async def _remove_runner(self,
                             runner: EphemeralRunner,
                             actions_client: ActionsService,
                             log: Any) -> bool:
        """
        Deregister a runner, then delete its resource.

        Returns:
            False if the runner picked up a job and was left alone

        Raises:
            ActionsError: If deregistration failed for any other reason
            KubernetesClientError: If the resource cannot be deleted
        """
        try:
            await actions_client.remove_runner(runner.status.runner_id)
        except ActionsError as e:
            if is_job_still_running(e):
                log.info("Ephemeral runner is still running a job, leaving it", runner=runner.name)
                return False
            raise

        log.info(
            "Deleting ephemeral runner after removing from the service",
            runner=runner.name,
            runner_id=runner.status.runner_id
        )
        await self._delete_runner(runner)
        return True

    async def _delete_runner(self, runner: EphemeralRunner) -> None:
        try:
            await self.k8s_client.delete_runner(runner)
        except NotFoundError:
            pass

    async def _delete_done_runners(self, runners: Iterable[EphemeralRunner], log: Any) -> List[BaseException]:
        """Delete finished and failed runners; they no longer count as capacity."""
        errors: List[BaseException] = []
        for runner in runners:
            log.info("Deleting finished ephemeral runner", runner=runner.name, phase=runner.status.phase)
            try:
                await self._delete_runner(runner)
            except KubernetesClientError as e:
                errors.append(e)
        return errors

    def _publish_metrics(self, runner_set: EphemeralRunnerSet, state: RunnerState, log: Any) -> None:
        if not self.config.enable_metrics:
            return
        try:
            github = parse_github_config_url(runner_set.spec.github_config_url)
        except ActionsConfigurationError as e:
            log.warning("GitHub config URL is invalid, skipping metrics", error=str(e))
            return

        labels = {
            "name": runner_set.metadata.labels.get(LABEL_KEY_SCALE_SET_NAME, runner_set.name),
            "namespace": runner_set.metadata.labels.get(LABEL_KEY_SCALE_SET_NAMESPACE, runner_set.namespace),
            "repository": github.repository,
            "organization": github.organization,
            "enterprise": github.enterprise,
        }
        PENDING_RUNNERS.labels(**labels).set(len(state.pending))
        RUNNING_RUNNERS.labels(**labels).set(len(state.running))
        FAILED_RUNNERS.labels(**labels).set(len(state.failed))

    # Controller runtime

    async def start(self) -> None:
        """
        Start watching runner sets and reconciling them.

        Raises:
            RuntimeError: If the controller is already running
            ConnectionError: If the Kubernetes configuration cannot be loaded
        """
        if self._running:
            raise RuntimeError("Controller is already running")

        self.logger.info("Starting runner set controller")
        self._initialize_clients()

        if self.config.enable_metrics:
            start_http_server(self.config.monitoring_port)
            self.logger.info("Metrics server started", port=self.config.monitoring_port)

        self.queue = ReconcileQueue(
            self._reconcile_key,
            max_concurrent=self.config.max_concurrent_reconciles,
            base_delay=self.config.requeue_base_delay,
            max_delay=self.config.requeue_max_delay,
            logger=self.logger
        )
        self.queue.start()
        self._running = True

        tasks = [
            asyncio.create_task(self._watch_forever("runner_sets")),
            asyncio.create_task(self._watch_forever("runners")),
        ]
        self.logger.info("Runner set controller started successfully")

        try:
            await self._shutdown_event.wait()
        finally:
            self._running = False
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.queue.stop()

    async def stop(self) -> None:
        """Stop the controller and close client connections."""
        self.logger.info("Stopping runner set controller")
        self._running = False
        self._shutdown_event.set()
        if self.k8s_client is not None:
            self.k8s_client.stop_watches()

        if self.actions_clients is not None:
            await self.actions_clients.close()
        if self.k8s_client is not None:
            await self.k8s_client.close()

        self.logger.info("Runner set controller stopped successfully")

    def _initialize_clients(self) -> None:
        if self.k8s_client is None:
            try:
                config.load_incluster_config()
                self.logger.info("Loaded in-cluster Kubernetes configuration")
            except config.ConfigException:
                try:
                    config.load_kube_config()
                except config.ConfigException as e:
                    raise ConnectionError(f"Kubernetes initialization failed: {e}") from e
                self.logger.info("Loaded local Kubernetes configuration")
            self.k8s_client = RunnerKubernetesClient(logger=self.logger)

        if self.actions_clients is None:
            self.actions_clients = ActionsClientPool(self.k8s_client, self.config.github, logger=self.logger)

    async def _reconcile_key(self, key: Hashable) -> None:
        namespace, name = key
        try:
            await self.reconcile(namespace, name)
        except Exception:
            RECONCILES.labels(result="error").inc()
            raise
        RECONCILES.labels(result="success").inc()

    async def _watch_forever(self, kind: str) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            done = loop.create_future()
            # Daemon threads: a stream blocked on a quiet connection must not
            # hold up interpreter or event loop shutdown.
            threading.Thread(
                target=self._run_watch,
                args=(kind, loop, done),
                name=f"watch-{kind}",
                daemon=True
            ).start()
            try:
                await done
            except Exception as e:
                self.logger.error("Watch stream failed, restarting", kind=kind, error=str(e))
                await asyncio.sleep(5)

    def _run_watch(self, kind: str, loop: asyncio.AbstractEventLoop, done: asyncio.Future) -> None:
        error: Optional[BaseException] = None
        try:
            self._consume_watch(kind, loop)
        except Exception as e:
            error = e
        _call_threadsafe(loop, _resolve, done, error)

    def _consume_watch(self, kind: str, loop: asyncio.AbstractEventLoop) -> None:
        """Read one watch stream to its server-side timeout (runs in a thread)."""
        if kind == "runner_sets":
            stream = self.k8s_client.watch_runner_sets(self.config.namespace, self.config.watch_timeout_seconds)
        else:
            stream = self.k8s_client.watch_runners(self.config.namespace, self.config.watch_timeout_seconds)

        for event in stream:
            if not self._running:
                return
            if event.get("type") == "ERROR":
                self.logger.warning("Watch returned an error event", kind=kind, event=event.get("object"))
                return
            for key in keys_for_event(kind, event):
                if not _call_threadsafe(loop, self.queue.add, key):
                    return


def _resolve(future: asyncio.Future, error: Optional[BaseException]) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


def _call_threadsafe(loop: asyncio.AbstractEventLoop, callback: Any, *args: Any) -> bool:
    """Schedule ``callback`` on ``loop``; False once the loop has closed."""
    try:
        loop.call_soon_threadsafe(callback, *args)
    except RuntimeError:
        return False
    return True
