"""
Controller configuration models with validation.

Configuration is loaded from YAML or JSON by the CLI and validated here
before any client is created.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.types import PositiveInt, SecretStr


# Maximum int32, the value used for an unbounded scale set
MAX_RUNNERS_UNBOUNDED = 2**31 - 1


class GitHubConfiguration(BaseModel):
    """
    GitHub connection settings used to reach the Actions service.

    The token is used when a runner set's config secret does not provide
    one itself.
    """

    api_url: Optional[str] = Field(
        default=None,
        description="GitHub API base URL override (defaults from the config URL)"
    )
    token: Optional[SecretStr] = Field(
        default=None,
        description="Fallback personal access token"
    )
    tls_verify: bool = Field(
        default=True,
        description="Verify TLS certificates"
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="HTTP request timeout in seconds"
    )

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate API URL format."""
        if v is None:
            return v
        if not (v.startswith("https://") or v.startswith("http://")):
            raise ValueError("GitHub API URL must include protocol (https:// or http://)")
        return v.rstrip("/")


class ScaleSetWorkerConfiguration(BaseModel):
    """
    Scaling bounds for the desired replica calculator of one runner set.
    """

    runner_set_namespace: str = Field(
        ...,
        description="Namespace of the EphemeralRunnerSet to patch"
    )
    runner_set_name: str = Field(
        ...,
        description="Name of the EphemeralRunnerSet to patch"
    )
    min_runners: int = Field(
        default=0,
        ge=0,
        description="Minimum number of runners"
    )
    max_runners: int = Field(
        default=MAX_RUNNERS_UNBOUNDED,
        ge=0,
        description="Maximum number of runners"
    )
    scale_up_factor: float = Field(
        default=1.0,
        ge=1.0,
        description="Multiplier applied to acquired jobs when scaling up"
    )

    @model_validator(mode="after")
    def validate_bounds(self) -> "ScaleSetWorkerConfiguration":
        """Validate scaling bounds for consistency."""
        if self.min_runners > self.max_runners:
            raise ValueError("min_runners must not be greater than max_runners")
        return self


class ControllerConfiguration(BaseModel):
    """
    Main controller configuration.

    Aggregates the settings of the runner set reconciler, its work queue,
    and monitoring.
    """

    namespace: Optional[str] = Field(
        default=None,
        description="Namespace to watch (all namespaces if unset)"
    )
    github: GitHubConfiguration = Field(
        default_factory=GitHubConfiguration,
        description="GitHub connection configuration"
    )
    max_concurrent_reconciles: PositiveInt = Field(
        default=2,
        le=64,
        description="Runner sets reconciled concurrently"
    )
    requeue_base_delay: float = Field(
        default=0.5,
        gt=0,
        description="Initial requeue delay after a failed reconcile (seconds)"
    )
    requeue_max_delay: float = Field(
        default=300.0,
        gt=0,
        description="Maximum requeue delay after repeated failures (seconds)"
    )
    watch_timeout_seconds: PositiveInt = Field(
        default=300,
        description="Server-side timeout of a single watch request"
    )
    monitoring_port: PositiveInt = Field(
        default=8080,
        description="Port for the metrics endpoint"
    )
    log_level: str = Field(
        default="INFO",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    enable_metrics: bool = Field(
        default=True,
        description="Enable Prometheus metrics"
    )

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    @model_validator(mode="after")
    def validate_requeue_delays(self) -> "ControllerConfiguration":
        if self.requeue_base_delay > self.requeue_max_delay:
            raise ValueError("requeue_base_delay must not exceed requeue_max_delay")
        return self


def sample_configuration() -> Dict[str, Any]:
    """Return a sample configuration document with defaults spelled out."""
    return {
        "namespace": "arc-runners",
        "github": {
            "api_url": None,
            "token": "REPLACE_WITH_ACTUAL_TOKEN",
            "tls_verify": True,
            "request_timeout": 30.0,
        },
        "max_concurrent_reconciles": 2,
        "requeue_base_delay": 0.5,
        "requeue_max_delay": 300.0,
        "watch_timeout_seconds": 300,
        "monitoring_port": 8080,
        "log_level": "INFO",
        "enable_metrics": True,
    }
