"""
Ephemeral runner resource models with type safety and validation.

This module defines the data models for the ``actions.github.com`` custom
resources managed by the controller: the ``EphemeralRunnerSet`` that carries
the desired replica count and patch id, and the ``EphemeralRunner`` resources
that represent one single-job runner each. Models are parsed directly from
the dictionaries returned by the Kubernetes API.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# Custom resource coordinates
GROUP = "actions.github.com"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"

RUNNER_SET_KIND = "EphemeralRunnerSet"
RUNNER_SET_PLURAL = "ephemeralrunnersets"
RUNNER_KIND = "EphemeralRunner"
RUNNER_PLURAL = "ephemeralrunners"

ANNOTATION_KEY_PATCH_ID = "actions.github.com/patch-id"
RUNNER_SET_FINALIZER = "ephemeralrunner.actions.github.com/finalizer"

# Patch ids are written as plain non-negative decimals
_PATCH_ID_PATTERN = re.compile(r"[0-9]+")

LABEL_KEY_KUBERNETES_PART_OF = "app.kubernetes.io/part-of"
LABEL_KEY_KUBERNETES_COMPONENT = "app.kubernetes.io/component"
LABEL_KEY_KUBERNETES_VERSION = "app.kubernetes.io/version"
LABEL_KEY_SCALE_SET_NAME = "actions.github.com/scale-set-name"
LABEL_KEY_SCALE_SET_NAMESPACE = "actions.github.com/scale-set-namespace"
LABEL_KEY_GITHUB_ENTERPRISE = "actions.github.com/enterprise"
LABEL_KEY_GITHUB_ORGANIZATION = "actions.github.com/organization"
LABEL_KEY_GITHUB_REPOSITORY = "actions.github.com/repository"

# Labels copied from the runner set onto every runner it creates
COMMON_LABEL_KEYS = (
    LABEL_KEY_KUBERNETES_PART_OF,
    LABEL_KEY_KUBERNETES_COMPONENT,
    LABEL_KEY_KUBERNETES_VERSION,
    LABEL_KEY_SCALE_SET_NAME,
    LABEL_KEY_SCALE_SET_NAMESPACE,
    LABEL_KEY_GITHUB_ENTERPRISE,
    LABEL_KEY_GITHUB_ORGANIZATION,
    LABEL_KEY_GITHUB_REPOSITORY,
)


class RunnerPhase(str, Enum):
    """
    Runner lifecycle phase, mirrored from the runner pod phase.

    The phase is written by the per-pod lifecycle reconciler; an unset
    phase is treated the same as ``Pending``.
    """

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class _KubernetesModel(BaseModel):
    """Base model accepting camelCase API keys and snake_case field names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class OwnerReference(_KubernetesModel):
    """Reference from a dependent object to its owner."""

    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str
    uid: str = ""
    controller: bool = False
    block_owner_deletion: bool = Field(default=False, alias="blockOwnerDeletion")


class ObjectMeta(_KubernetesModel):
    """Subset of Kubernetes object metadata used by the controller."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = Field(default="", alias="resourceVersion")
    creation_timestamp: Optional[datetime] = Field(default=None, alias="creationTimestamp")
    deletion_timestamp: Optional[datetime] = Field(default=None, alias="deletionTimestamp")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    owner_references: List[OwnerReference] = Field(default_factory=list, alias="ownerReferences")

    def controller_reference(self) -> Optional[OwnerReference]:
        """Return the owner reference flagged as controller, if any."""
        for reference in self.owner_references:
            if reference.controller:
                return reference
        return None


class EphemeralRunnerStatus(_KubernetesModel):
    """
    Observed state of a single ephemeral runner.

    Owned by the per-pod lifecycle reconciler and by the listener worker
    (job information). The runner set reconciler only reads it.
    """

    # Kept as plain text; any value outside RunnerPhase counts as pending
    phase: str = ""
    reason: str = ""
    message: str = ""
    runner_id: int = Field(default=0, alias="runnerId")
    runner_name: str = Field(default="", alias="runnerName")
    job_request_id: int = Field(default=0, alias="jobRequestId")
    job_repository_name: str = Field(default="", alias="jobRepositoryName")
    job_workflow_ref: str = Field(default="", alias="jobWorkflowRef")
    job_display_name: str = Field(default="", alias="jobDisplayName")
    workflow_run_id: int = Field(default=0, alias="workflowRunId")


class EphemeralRunner(_KubernetesModel):
    """One Kubernetes resource representing a single ephemeral runner."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: Dict[str, Any] = Field(default_factory=dict)
    status: EphemeralRunnerStatus = Field(default_factory=EphemeralRunnerStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def is_registered(self) -> bool:
        return self.status.runner_id > 0

    @property
    def has_job(self) -> bool:
        return self.status.job_request_id > 0

    def patch_id(self) -> Optional[int]:
        """
        Return the patch id this runner was created for.

        Returns:
            The parsed annotation value, or None if missing or malformed
        """
        raw = self.metadata.annotations.get(ANNOTATION_KEY_PATCH_ID)
        if raw is None or not _PATCH_ID_PATTERN.fullmatch(raw):
            return None
        return int(raw)


class EphemeralRunnerSetSpec(_KubernetesModel):
    """Desired state of a runner set, written by the listener worker."""

    replicas: int = 0
    patch_id: int = Field(default=0, alias="patchID")
    ephemeral_runner_spec: Dict[str, Any] = Field(default_factory=dict, alias="ephemeralRunnerSpec")

    @property
    def github_config_url(self) -> str:
        return self.ephemeral_runner_spec.get("githubConfigUrl", "")

    @property
    def github_config_secret(self) -> str:
        return self.ephemeral_runner_spec.get("githubConfigSecret", "")


class EphemeralRunnerSetStatus(_KubernetesModel):
    """Observed runner counts of a runner set."""

    current_replicas: int = Field(default=0, alias="currentReplicas")
    pending_ephemeral_runners: int = Field(default=0, alias="pendingEphemeralRunners")
    running_ephemeral_runners: int = Field(default=0, alias="runningEphemeralRunners")
    failed_ephemeral_runners: int = Field(default=0, alias="failedEphemeralRunners")

    def to_api(self) -> Dict[str, int]:
        return self.model_dump(by_alias=True)


class EphemeralRunnerSet(_KubernetesModel):
    """Autoscaled group of ephemeral runners for one runner scale set."""

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: EphemeralRunnerSetSpec = Field(default_factory=EphemeralRunnerSetSpec)
    status: EphemeralRunnerSetStatus = Field(default_factory=EphemeralRunnerSetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str = RUNNER_SET_FINALIZER) -> bool:
        return finalizer in self.metadata.finalizers

    def owns(self, runner: EphemeralRunner) -> bool:
        """
        Check whether a runner is controlled by this runner set.

        Args:
            runner: Runner resource to check

        Returns:
            True if the runner's controller reference points at this set
        """
        owner = runner.metadata.controller_reference()
        if owner is None:
            return False
        if owner.api_version != API_VERSION or owner.kind != RUNNER_SET_KIND:
            return False
        return owner.name == self.name

    def new_runner_body(self) -> Dict[str, Any]:
        """
        Build the API body of a new runner owned by this set.

        The runner inherits the set's common labels and annotations, is
        stamped with the set's current patch id, and carries a controller
        owner reference so that the owner index and garbage collection
        both resolve it back to this set.
        """
        labels: Dict[str, str] = {}
        for key in COMMON_LABEL_KEYS:
            if key == LABEL_KEY_KUBERNETES_COMPONENT:
                labels[key] = "runner"
            elif key in self.metadata.labels:
                labels[key] = self.metadata.labels[key]

        annotations = dict(self.metadata.annotations)
        annotations[ANNOTATION_KEY_PATCH_ID] = str(self.spec.patch_id)

        return {
            "apiVersion": API_VERSION,
            "kind": RUNNER_KIND,
            "metadata": {
                "generateName": f"{self.name}-runner-",
                "namespace": self.namespace,
                "labels": labels,
                "annotations": annotations,
                "ownerReferences": [
                    {
                        "apiVersion": API_VERSION,
                        "kind": RUNNER_SET_KIND,
                        "name": self.name,
                        "uid": self.metadata.uid,
                        "controller": True,
                        "blockOwnerDeletion": True,
                    }
                ],
            },
            "spec": dict(self.spec.ephemeral_runner_spec),
        }
