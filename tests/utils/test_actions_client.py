"""
Actions service client tests.

HTTP traffic is served by ``httpx.MockTransport`` handlers that emulate the
GitHub registration endpoints and the Actions service.
"""

import json

import httpx
import pytest

from fakes import FakeKubernetesClient, make_runner_set
from runner_scale_set_controller.models.config import GitHubConfiguration
from runner_scale_set_controller.models.runner import EphemeralRunnerSet
from runner_scale_set_controller.utils.actions_client import (
    ActionsClientPool,
    ActionsConfigurationError,
    ActionsError,
    ActionsServiceClient,
    GitHubAPIError,
    is_job_still_running,
    parse_actions_error,
    parse_github_config_url,
)

ACTIONS_URL = "https://pipelines.actions.githubusercontent.com/tenant-1/"


class ActionsServer:
    """Request handler emulating GitHub and the Actions service."""

    def __init__(self, delete_responses=None):
        self.requests = []
        self.delete_responses = list(delete_responses or [httpx.Response(204)])
        self.admin_tokens = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/repos/my-org/my-repo/actions/runners/registration-token":
            assert request.headers["Authorization"] == "Bearer pat-token"
            return httpx.Response(201, json={"token": "registration-token"})

        if path == "/actions/runner-registration":
            assert request.headers["Authorization"] == "RemoteAuth registration-token"
            assert json.loads(request.content) == {
                "url": "https://github.com/my-org/my-repo",
                "runner_event": "register",
            }
            self.admin_tokens += 1
            return httpx.Response(201, json={"url": ACTIONS_URL, "token": f"admin-{self.admin_tokens}"})

        if request.method == "DELETE" and path.startswith("/tenant-1/_apis/distributedtask/pools/0/agents/"):
            assert request.url.params["api-version"] == "6.0-preview"
            return self.delete_responses.pop(0)

        return httpx.Response(404, text="not found")

    def paths(self):
        return [request.url.path for request in self.requests]


def make_client(server, config_url="https://github.com/my-org/my-repo"):
    return ActionsServiceClient(
        config_url=config_url,
        token="pat-token",
        transport=httpx.MockTransport(server),
    )


class TestActionsServiceClient:
    """Test runner deregistration against the Actions service."""

    async def test_remove_runner(self):
        """Test the registration flow followed by the runner deletion."""
        server = ActionsServer(delete_responses=[httpx.Response(204), httpx.Response(204)])
        client = make_client(server)

        await client.remove_runner(42)
        await client.remove_runner(43)
        await client.close()

        assert server.paths() == [
            "/repos/my-org/my-repo/actions/runners/registration-token",
            "/actions/runner-registration",
            "/tenant-1/_apis/distributedtask/pools/0/agents/42",
            "/tenant-1/_apis/distributedtask/pools/0/agents/43",
        ]
        assert server.requests[2].headers["Authorization"] == "Bearer admin-1"
        assert server.requests[0].url.host == "api.github.com"

    async def test_job_still_running(self):
        """Test classification of a runner that picked up a job."""
        body = {
            "$id": "1",
            "typeName": "GitHub.DistributedTask.WebApi.JobStillRunningException, GitHub.DistributedTask.WebApi",
            "message": "Job is still running",
        }
        server = ActionsServer(delete_responses=[
            httpx.Response(400, json=body, headers={"ActivityId": "activity-9"}),
        ])
        client = make_client(server)

        with pytest.raises(ActionsError) as exc_info:
            await client.remove_runner(42)
        await client.close()

        error = exc_info.value
        assert error.status_code == 400
        assert error.activity_id == "activity-9"
        assert error.message == "Job is still running"
        assert is_job_still_running(error)

    async def test_unauthorized_refreshes_admin_connection(self):
        """Test that an expired admin token is refreshed once."""
        server = ActionsServer(delete_responses=[httpx.Response(401), httpx.Response(204)])
        client = make_client(server)

        await client.remove_runner(42)
        await client.close()

        assert server.admin_tokens == 2
        assert server.requests[-1].headers["Authorization"] == "Bearer admin-2"

    async def test_other_failures_are_not_job_still_running(self):
        """Test that server errors are surfaced as plain Actions errors."""
        server = ActionsServer(delete_responses=[
            httpx.Response(500, text="boom", headers={"content-type": "text/plain"}),
        ])
        client = make_client(server)

        with pytest.raises(ActionsError) as exc_info:
            await client.remove_runner(42)
        await client.close()

        assert exc_info.value.message == "boom"
        assert not is_job_still_running(exc_info.value)

    async def test_registration_failure(self):
        """Test that GitHub API failures carry the request id."""
        def handler(request):
            return httpx.Response(403, text="forbidden", headers={"X-GitHub-Request-Id": "req-1"})

        client = make_client(handler)

        with pytest.raises(GitHubAPIError) as exc_info:
            await client.remove_runner(42)
        await client.close()

        assert exc_info.value.status_code == 403
        assert exc_info.value.request_id == "req-1"

    def test_token_required(self):
        """Test that a client cannot be built without a token."""
        with pytest.raises(ActionsConfigurationError):
            ActionsServiceClient(config_url="https://github.com/my-org", token="")


class TestParseActionsError:
    """Test parsing of Actions service error bodies."""

    def test_empty_body(self):
        error = parse_actions_error(httpx.Response(500))
        assert error.message == "unknown exception"

    def test_json_body_with_byte_order_mark(self):
        """Test that a leading byte order mark is tolerated."""
        content = "\ufeff" + json.dumps({"typeName": "AgentNotFoundException", "message": "gone"})
        response = httpx.Response(404, content=content.encode("utf-8"), headers={"ActivityId": "a-1"})

        error = parse_actions_error(response)

        assert error.exception_name == "AgentNotFoundException"
        assert error.message == "gone"
        assert error.activity_id == "a-1"

    def test_job_still_running_requires_bad_request(self):
        """Test that only a 400 is treated as a running job."""
        error = ActionsError(409, "conflict", exception_name="JobStillRunningException")
        assert not is_job_still_running(error)
        assert not is_job_still_running(RuntimeError("JobStillRunningException"))


class TestParseGitHubConfigURL:
    """Test parsing of runner scale set configuration URLs."""

    def test_repository(self):
        config = parse_github_config_url("https://github.com/my-org/my-repo")
        assert (config.organization, config.repository, config.enterprise) == ("my-org", "my-repo", "")
        assert config.api_url == "https://api.github.com"
        assert config.registration_token_path() == "/repos/my-org/my-repo/actions/runners/registration-token"

    def test_organization(self):
        config = parse_github_config_url("https://github.com/my-org/")
        assert config.organization == "my-org"
        assert config.registration_token_path() == "/orgs/my-org/actions/runners/registration-token"

    def test_enterprise_server(self):
        """Test an enterprise scope on a GitHub Enterprise Server host."""
        config = parse_github_config_url("https://ghe.example.com/enterprises/acme")
        assert config.enterprise == "acme"
        assert not config.is_hosted
        assert config.api_url == "https://ghe.example.com/api/v3"
        assert config.registration_token_path() == "/enterprises/acme/actions/runners/registration-token"

    @pytest.mark.parametrize("url", ["", "github.com/my-org", "https://github.com", "https://github.com/a/b/c"])
    def test_invalid(self, url):
        with pytest.raises(ActionsConfigurationError):
            parse_github_config_url(url)


class TestActionsClientPool:
    """Test resolution and caching of per runner set clients."""

    def runner_set(self, config_secret="github-secret"):
        return EphemeralRunnerSet.model_validate(make_runner_set(config_secret=config_secret))

    async def test_token_read_from_config_secret(self):
        """Test that clients are cached per token."""
        k8s = FakeKubernetesClient(secrets={("arc-runners", "github-secret"): {"github_token": "secret-token"}})
        pool = ActionsClientPool(k8s, GitHubConfiguration())

        first = await pool.client_for(self.runner_set())
        second = await pool.client_for(self.runner_set())

        assert first is second
        assert first._token == "secret-token"

        k8s.secrets[("arc-runners", "github-secret")]["github_token"] = "rotated-token"
        rotated = await pool.client_for(self.runner_set())
        assert rotated is not first
        await pool.close()

    async def test_fallback_token(self):
        """Test the configured token when the runner set has no secret."""
        pool = ActionsClientPool(FakeKubernetesClient(), GitHubConfiguration(token="fallback-token"))

        client = await pool.client_for(self.runner_set(config_secret=""))

        assert client._token == "fallback-token"
        await pool.close()

    async def test_missing_token(self):
        """Test that a runner set without any token is rejected."""
        pool = ActionsClientPool(FakeKubernetesClient(), GitHubConfiguration())

        with pytest.raises(ActionsConfigurationError):
            await pool.client_for(self.runner_set(config_secret=""))
