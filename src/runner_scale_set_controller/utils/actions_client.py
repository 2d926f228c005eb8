"""
GitHub Actions service client for the runner scale set controller.

This module implements the small part of the Actions service API the
controller needs: deregistering a runner before its resource is deleted.
Authentication follows the runner registration flow: a registration token
is exchanged for an Actions service URL and admin token, which are then
used for the service calls themselves.
"""

import hashlib
import json
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import BaseModel

from ..models.config import GitHubConfiguration
from ..models.runner import EphemeralRunnerSet


HEADER_ACTIONS_ACTIVITY_ID = "ActivityId"
HEADER_GITHUB_REQUEST_ID = "X-GitHub-Request-Id"

RUNNER_ENDPOINT = "_apis/distributedtask/pools/0/agents"
API_VERSION_QUERY = {"api-version": "6.0-preview"}

JOB_STILL_RUNNING_EXCEPTION = "JobStillRunningException"


class ActionsError(Exception):
    """Raised when the Actions service rejects a request."""

    def __init__(self,
                 status_code: int,
                 message: str,
                 activity_id: str = "",
                 exception_name: str = "") -> None:
        super().__init__(
            f"actions error: StatusCode {status_code}, ActivityId {activity_id!r}: "
            f"{exception_name + ': ' if exception_name else ''}{message}"
        )
        self.status_code = status_code
        self.message = message
        self.activity_id = activity_id
        self.exception_name = exception_name


class GitHubAPIError(Exception):
    """Raised when the GitHub REST API rejects a request."""

    def __init__(self, status_code: int, message: str, request_id: str = "") -> None:
        super().__init__(f"github api error: StatusCode {status_code}, RequestID {request_id!r}: {message}")
        self.status_code = status_code
        self.request_id = request_id


class ActionsConfigurationError(Exception):
    """Raised when a runner set's GitHub configuration cannot be used."""
    pass


def is_job_still_running(error: BaseException) -> bool:
    """
    Check whether a deregistration failed only because a job is running.

    This is the single non-fatal classification of a ``remove_runner``
    failure: the runner picked up a job and must be left alone.
    """
    return (
        isinstance(error, ActionsError)
        and error.status_code == httpx.codes.BAD_REQUEST
        and JOB_STILL_RUNNING_EXCEPTION in error.exception_name
    )


def parse_actions_error(response: httpx.Response) -> ActionsError:
    """
    Build an ActionsError from a failed Actions service response.

    The body is either plain text or a JSON exception document with
    ``typeName`` and ``message`` fields; a leading byte order mark is
    tolerated.
    """
    activity_id = response.headers.get(HEADER_ACTIONS_ACTIVITY_ID, "")
    body = response.content.decode("utf-8-sig", errors="replace").strip()
    if not body:
        return ActionsError(response.status_code, "unknown exception", activity_id=activity_id)

    if "text/plain" in response.headers.get("content-type", ""):
        return ActionsError(response.status_code, body, activity_id=activity_id)

    try:
        document = json.loads(body)
    except ValueError as e:
        return ActionsError(response.status_code, f"invalid error body: {e}", activity_id=activity_id)
    if not isinstance(document, dict):
        return ActionsError(response.status_code, body, activity_id=activity_id)

    return ActionsError(
        response.status_code,
        str(document.get("message", "")),
        activity_id=activity_id,
        exception_name=str(document.get("typeName", "")),
    )


class GitHubConfig(BaseModel):
    """Parsed scope of a GitHub configuration URL."""

    config_url: str
    host: str
    enterprise: str = ""
    organization: str = ""
    repository: str = ""

    @property
    def is_hosted(self) -> bool:
        return self.host in ("github.com", "www.github.com", "github.localhost")

    @property
    def api_url(self) -> str:
        if self.is_hosted:
            return "https://api.github.com"
        scheme = urlparse(self.config_url).scheme or "https"
        return f"{scheme}://{self.host}/api/v3"

    def registration_token_path(self) -> str:
        if self.enterprise:
            return f"/enterprises/{self.enterprise}/actions/runners/registration-token"
        if self.repository:
            return f"/repos/{self.organization}/{self.repository}/actions/runners/registration-token"
        return f"/orgs/{self.organization}/actions/runners/registration-token"


def parse_github_config_url(url: str) -> GitHubConfig:
    """
    Parse a runner scale set's GitHub configuration URL.

    Accepts ``https://host/enterprises/<ent>``, ``https://host/<org>`` and
    ``https://host/<org>/<repo>``.

    Raises:
        ActionsConfigurationError: If the URL has no recognizable scope
    """
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ActionsConfigurationError(f"invalid GitHub config URL: {url!r}")

    parts = [part for part in parsed.path.split("/") if part]
    config_url = url.strip().rstrip("/")
    host = parsed.netloc.lower()

    if len(parts) == 2 and parts[0] == "enterprises":
        return GitHubConfig(config_url=config_url, host=host, enterprise=parts[1])
    if len(parts) == 1:
        return GitHubConfig(config_url=config_url, host=host, organization=parts[0])
    if len(parts) == 2:
        return GitHubConfig(config_url=config_url, host=host, organization=parts[0], repository=parts[1])

    raise ActionsConfigurationError(f"GitHub config URL has no organization, repository or enterprise: {url!r}")


class ActionsService(Protocol):
    """Capability the reconciler needs from the Actions service."""

    async def remove_runner(self, runner_id: int) -> None:
        ...


class ActionsServiceClient:
    """
    Async client for the GitHub Actions service.

    The admin connection is fetched lazily on first use and refreshed once
    when the service answers 401.
    """

    def __init__(self,
                 config_url: str,
                 token: str,
                 api_url: Optional[str] = None,
                 tls_verify: bool = True,
                 timeout: float = 30.0,
                 logger: Any = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        """
        Initialize the Actions service client.

        Args:
            config_url: GitHub configuration URL of the runner scale set
            token: GitHub personal access token
            api_url: GitHub API base URL override
            tls_verify: Whether to verify TLS certificates
            timeout: Request timeout in seconds
            logger: Structured logger instance
            transport: Optional httpx transport (used by tests)

        Raises:
            ActionsConfigurationError: If the config URL or token is unusable
        """
        if not token:
            raise ActionsConfigurationError("GitHub token is required")

        self.config = parse_github_config_url(config_url)
        self.api_url = (api_url or self.config.api_url).rstrip("/")
        self.logger = (logger or structlog.get_logger()).bind(
            component="actions_client",
            config_url=self.config.config_url
        )
        self._token = token
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            verify=tls_verify,
            follow_redirects=False,
            transport=transport,
            headers={"User-Agent": "runner-scale-set-controller"},
        )
        self._actions_url: Optional[str] = None
        self._admin_token: Optional[str] = None

    async def remove_runner(self, runner_id: int) -> None:
        """
        Deregister a runner from the Actions service.

        Args:
            runner_id: Runner id assigned at registration

        Raises:
            ActionsError: If the service rejects the removal
            GitHubAPIError: If the admin connection cannot be established
        """
        response = await self._actions_request("DELETE", f"{RUNNER_ENDPOINT}/{runner_id}")
        if response.status_code == httpx.codes.UNAUTHORIZED:
            self.logger.info("Actions service token rejected, refreshing admin connection")
            self._admin_token = None
            response = await self._actions_request("DELETE", f"{RUNNER_ENDPOINT}/{runner_id}")

        if response.status_code != httpx.codes.NO_CONTENT:
            raise parse_actions_error(response)

        self.logger.debug("Runner removed from the Actions service", runner_id=runner_id)

    async def _actions_request(self, method: str, path: str) -> httpx.Response:
        actions_url, admin_token = await self._admin_connection()
        return await self._client.request(
            method,
            f"{actions_url}/{path}",
            params=API_VERSION_QUERY,
            headers={
                "Authorization": f"Bearer {admin_token}",
                "Accept": "application/json",
            },
        )

    async def _admin_connection(self) -> Tuple[str, str]:
        if self._actions_url and self._admin_token:
            return self._actions_url, self._admin_token

        registration_token = await self._registration_token()

        self.logger.info("Getting Actions tenant URL and admin token")
        response = await self._client.post(
            f"{self.api_url}/actions/runner-registration",
            json={"url": self.config.config_url, "runner_event": "register"},
            headers={"Authorization": f"RemoteAuth {registration_token}"},
        )
        document = self._github_json(response, httpx.codes.OK, httpx.codes.CREATED)
        actions_url = document.get("url")
        admin_token = document.get("token")
        if not actions_url or not admin_token:
            raise GitHubAPIError(
                response.status_code,
                "runner registration response is missing url or token",
                request_id=response.headers.get(HEADER_GITHUB_REQUEST_ID, ""),
            )

        self._actions_url = str(actions_url).rstrip("/")
        self._admin_token = str(admin_token)
        return self._actions_url, self._admin_token

    async def _registration_token(self) -> str:
        self.logger.info("Getting runner registration token")
        response = await self._client.post(
            f"{self.api_url}{self.config.registration_token_path()}",
            headers={
                "Authorization": f"Bearer {self._token}",
                "Accept": "application/vnd.github.v3+json",
            },
        )
        document = self._github_json(response, httpx.codes.CREATED)
        token = document.get("token")
        if not token:
            raise GitHubAPIError(
                response.status_code,
                "registration token response is missing token",
                request_id=response.headers.get(HEADER_GITHUB_REQUEST_ID, ""),
            )
        return str(token)

    @staticmethod
    def _github_json(response: httpx.Response, *expected: int) -> Dict[str, Any]:
        request_id = response.headers.get(HEADER_GITHUB_REQUEST_ID, "")
        if response.status_code not in expected:
            raise GitHubAPIError(response.status_code, response.text[:200], request_id=request_id)
        try:
            document = response.json()
        except ValueError as e:
            raise GitHubAPIError(response.status_code, f"invalid JSON body: {e}", request_id=request_id) from e
        if not isinstance(document, dict):
            raise GitHubAPIError(response.status_code, "unexpected response body", request_id=request_id)
        return document

    async def close(self) -> None:
        await self._client.aclose()


class ActionsClientPool:
    """
    Resolves and caches one Actions service client per runner set config.

    The token is read from the runner set's ``githubConfigSecret``
    (``github_token`` key), falling back to the controller's configured
    token. Clients are keyed by namespace, config URL and a digest of the
    token, so rotating the secret yields a fresh client.
    """

    def __init__(self,
                 kubernetes_client: Any,
                 github: GitHubConfiguration,
                 logger: Any = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.kubernetes_client = kubernetes_client
        self.github = github
        self.logger = (logger or structlog.get_logger()).bind(component="actions_client_pool")
        self._transport = transport
        self._clients: Dict[Tuple[str, str, str], ActionsServiceClient] = {}

    async def client_for(self, runner_set: EphemeralRunnerSet) -> ActionsServiceClient:
        """
        Get the Actions service client of a runner set.

        Raises:
            ActionsConfigurationError: If no token or config URL is available
        """
        config_url = runner_set.spec.github_config_url
        if not config_url:
            raise ActionsConfigurationError(f"runner set {runner_set.name} has no githubConfigUrl")

        token = ""
        secret_name = runner_set.spec.github_config_secret
        if secret_name:
            secret = await self.kubernetes_client.read_secret_data(runner_set.namespace, secret_name)
            token = secret.get("github_token", "")
        if not token and self.github.token is not None:
            token = self.github.token.get_secret_value()
        if not token:
            raise ActionsConfigurationError(
                f"no github_token for runner set {runner_set.namespace}/{runner_set.name}"
            )

        key = (runner_set.namespace, config_url, hashlib.sha256(token.encode("utf-8")).hexdigest())
        cached = self._clients.get(key)
        if cached is not None:
            return cached

        self.logger.info("Creating Actions service client", namespace=runner_set.namespace, config_url=config_url)
        actions_client = ActionsServiceClient(
            config_url=config_url,
            token=token,
            api_url=self.github.api_url,
            tls_verify=self.github.tls_verify,
            timeout=self.github.request_timeout,
            logger=self.logger,
            transport=self._transport,
        )
        self._clients[key] = actions_client
        return actions_client

    async def close(self) -> None:
        for actions_client in self._clients.values():
            await actions_client.close()
        self._clients.clear()
