"""
Scale set worker: applies listener decisions to the cluster.

The worker sits between the message listener and the runner set
reconciler. It turns job batches into ``{replicas, patchID}`` patches on the
runner set and records job assignments on runner status so the reconciler
knows which runners must not be reclaimed.
"""

from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from ..models.config import ScaleSetWorkerConfiguration
from ..utils.kubernetes_client import NotFoundError, RunnerKubernetesClient
from .desired_replicas import DesiredReplicaCalculator


class JobStarted(BaseModel):
    """Job assignment reported by the listener when a runner picks up a job."""

    runner_name: str
    runner_request_id: int
    owner_name: str = ""
    repository_name: str = ""
    job_workflow_ref: str = ""
    job_display_name: str = ""
    workflow_run_id: int = Field(default=0, ge=0)


class ScaleSetWorker:
    """
    Processes listener messages for one runner set.

    Not safe for concurrent use: the listener calls it from a single
    message loop, one batch at a time.
    """

    def __init__(self,
                 config: ScaleSetWorkerConfiguration,
                 kubernetes_client: RunnerKubernetesClient,
                 logger: Any = None) -> None:
        self.config = config
        self.kubernetes_client = kubernetes_client
        self.logger = (logger or structlog.get_logger()).bind(
            component="scale_set_worker",
            runner_set=f"{config.runner_set_namespace}/{config.runner_set_name}"
        )
        self.calculator = DesiredReplicaCalculator(
            min_runners=config.min_runners,
            max_runners=config.max_runners,
            scale_up_factor=config.scale_up_factor,
            logger=self.logger
        )

    async def handle_desired_runner_count(self, acquired: int, completed: int) -> int:
        """
        Compute and apply the desired runner count for one message batch.

        Args:
            acquired: Jobs assigned in this batch
            completed: Jobs completed in this batch

        Returns:
            The desired runner count written to the runner set

        Raises:
            KubernetesClientError: If the runner set cannot be patched
        """
        patch_id = self.calculator.compute(acquired, completed)
        replicas = self.calculator.last_patch

        self.logger.info("Preparing runner set update", replicas=replicas, patch_id=patch_id)
        patched = await self.kubernetes_client.patch_runner_set_spec(
            self.config.runner_set_namespace,
            self.config.runner_set_name,
            replicas=replicas,
            patch_id=patch_id,
        )

        self.logger.info("Runner set scaled", replicas=patched.spec.replicas, patch_id=patched.spec.patch_id)
        return replicas

    async def handle_job_started(self, job: JobStarted) -> Optional[str]:
        """
        Record a job assignment on the runner's status.

        A runner that no longer exists is skipped.

        Returns:
            The runner name if its status was patched, None if it was gone
        """
        self.logger.info(
            "Updating job info for the runner",
            runner_name=job.runner_name,
            request_id=job.runner_request_id,
            workflow_ref=job.job_workflow_ref
        )
        status = {
            "jobRequestId": job.runner_request_id,
            "jobRepositoryName": f"{job.owner_name}/{job.repository_name}",
            "workflowRunId": job.workflow_run_id,
            "jobWorkflowRef": job.job_workflow_ref,
            "jobDisplayName": job.job_display_name,
        }
        try:
            await self.kubernetes_client.patch_runner_status(
                self.config.runner_set_namespace,
                job.runner_name,
                status,
            )
        except NotFoundError:
            self.logger.info("Ephemeral runner not found, skipping status patch", runner_name=job.runner_name)
            return None

        return job.runner_name
