"""Unit tests for GitHubClient, the repository allowlist and mirror creation.

HTTP traffic is served by httpx.MockTransport so request shapes and the
mapping of responses onto the error taxonomy can be asserted directly.
"""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from src.fabrication.errors import (
    AccessDeniedError,
    ExternalPermanentError,
    ExternalTransientError,
    InputValidationError,
    NotFoundError,
    RateLimitError,
)
from src.fabrication.github import (
    AllowlistRepoAccessPolicy,
    GitHubClient,
    GitHubMirrorPublisher,
)
from src.fabrication.state import Issue


def run_async(coro):
    return asyncio.run(coro)


def _client(handler, access_policy=None) -> GitHubClient:
    return GitHubClient(
        token="ghp_secret_token",
        base_url="https://github.example.com/api/v3/",
        transport=httpx.MockTransport(handler),
        access_policy=access_policy,
    )


async def _call(client: GitHubClient, method: str, *args, **kwargs):
    async with client:
        return await getattr(client, method)(*args, **kwargs)


class TestRequests:
    def test_search_issues_builds_literal_query(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["headers"] = request.headers
            return httpx.Response(200, json={"items": [{"number": 1}]})

        items = run_async(_call(_client(handler), "search_issues", "acme", "widgets", 'I-"1"'))

        assert items == [{"number": 1}]
        assert seen["url"].path == "/api/v3/search/issues"
        assert seen["url"].params["q"] == 'repo:acme/widgets is:issue "I- 1"'
        assert seen["headers"]["authorization"] == "Bearer ghp_secret_token"
        assert seen["headers"]["x-github-api-version"] == "2022-11-28"

    def test_trigger_workflow_posts_ref_and_inputs(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(204)

        result = run_async(
            _call(
                _client(handler),
                "trigger_workflow",
                "acme",
                "widgets",
                "ci.yml",
                "main",
                {"correlation_id": "abc"},
            )
        )

        assert result is None
        assert seen["path"].endswith("/repos/acme/widgets/actions/workflows/ci.yml/dispatches")
        assert seen["body"] == {"ref": "main", "inputs": {"correlation_id": "abc"}}

    def test_list_workflow_runs_filters(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = request.url.params
            return httpx.Response(200, json={"total_count": 1, "workflow_runs": [{"id": 9}]})

        runs = run_async(
            _call(
                _client(handler),
                "list_workflow_runs",
                "acme",
                "widgets",
                "ci.yml",
                branch="main",
                event="workflow_dispatch",
                created_after=datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            )
        )

        assert runs == [{"id": 9}]
        assert seen["params"]["branch"] == "main"
        assert seen["params"]["event"] == "workflow_dispatch"
        assert seen["params"]["created"] == ">=2026-01-02T03:04:05Z"

    def test_run_jobs_and_artifacts_unwrap_envelopes(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/jobs"):
                return httpx.Response(200, json={"jobs": [{"id": 1}]})
            return httpx.Response(200, json={"artifacts": [{"id": 2}]})

        async def scenario():
            async with _client(handler) as client:
                return (
                    await client.list_run_jobs("acme", "widgets", 5),
                    await client.list_run_artifacts("acme", "widgets", 5),
                )

        jobs, artifacts = run_async(scenario())
        assert jobs == [{"id": 1}]
        assert artifacts == [{"id": 2}]


class TestErrorMapping:
    @pytest.mark.parametrize(
        "status_code,error_type",
        [
            (401, AccessDeniedError),
            (403, AccessDeniedError),
            (404, NotFoundError),
            (422, ExternalPermanentError),
            (408, ExternalTransientError),
            (500, ExternalTransientError),
            (502, ExternalTransientError),
            (503, ExternalTransientError),
        ],
    )
    def test_status_codes(self, status_code, error_type):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json={"message": "nope"})

        with pytest.raises(error_type) as exc_info:
            run_async(_call(_client(handler), "get_workflow_run", "acme", "widgets", 7))

        error = exc_info.value
        assert error.status_code == status_code
        assert error.context["repository"] == "acme/widgets"
        assert error.context["external_run_id"] == 7
        assert "ghp_secret_token" not in str(error)

    def test_not_found_is_permanent(self):
        assert issubclass(NotFoundError, ExternalPermanentError)
        assert not NotFoundError.retryable
        assert ExternalTransientError.retryable

    def test_429_is_rate_limit(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"retry-after": "12"})

        with pytest.raises(RateLimitError) as exc_info:
            run_async(_call(_client(handler), "get_workflow_run", "acme", "widgets", 7))
        assert exc_info.value.retry_after == 12

    def test_403_with_exhausted_quota_is_rate_limit(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                403,
                headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "0"},
            )

        with pytest.raises(RateLimitError) as exc_info:
            run_async(_call(_client(handler), "get_workflow_run", "acme", "widgets", 7))
        assert isinstance(exc_info.value, ExternalTransientError)
        assert exc_info.value.retry_after == 0

    def test_network_errors_are_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalTransientError):
            run_async(_call(_client(handler), "get_workflow_run", "acme", "widgets", 7))

    def test_timeouts_are_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ExternalTransientError) as exc_info:
            run_async(_call(_client(handler), "get_workflow_run", "acme", "widgets", 7))
        assert "timed out" in exc_info.value.message

    def test_malformed_envelope_is_permanent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"unexpected": True})

        with pytest.raises(ExternalPermanentError):
            run_async(_call(_client(handler), "search_issues", "acme", "widgets", "I-1"))

    def test_invalid_json_is_permanent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>")

        with pytest.raises(ExternalPermanentError):
            run_async(_call(_client(handler), "get_workflow_run", "acme", "widgets", 7))


class TestAccessPolicy:
    def test_denied_repository_makes_no_request(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"items": []})

        policy = AllowlistRepoAccessPolicy(["acme/widgets"])
        with pytest.raises(AccessDeniedError) as exc_info:
            run_async(_call(_client(handler, policy), "search_issues", "acme", "secret", "I-1"))

        assert calls == []
        assert exc_info.value.context["repository"] == "acme/secret"

    def test_blank_coordinates_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(InputValidationError):
            run_async(_call(_client(handler), "get_workflow_run", " ", "widgets", 7))

    @pytest.mark.parametrize(
        "owner,repo,allowed",
        [
            ("acme", "widgets", True),
            ("ACME", "Widgets", True),
            ("tools", "anything", True),
            ("acme", "gadgets", False),
            ("other", "widgets", False),
        ],
    )
    def test_allowlist_matching(self, owner, repo, allowed):
        policy = AllowlistRepoAccessPolicy(["acme/widgets", " Tools/* ", ""])
        assert policy.is_allowed(owner, repo) is allowed

    def test_empty_allowlist_allows_all(self):
        policy = AllowlistRepoAccessPolicy([])
        assert policy.allows_all
        policy.check("anyone", "anything")

    @pytest.mark.parametrize("entry", ["acme", "/widgets", "acme/"])
    def test_invalid_entries_rejected(self, entry):
        with pytest.raises(InputValidationError):
            AllowlistRepoAccessPolicy([entry])


class TestMirrorPublisher:
    def _issue(self, **overrides) -> Issue:
        values = dict(
            id="issue-1",
            canonical_id="I-1",
            title="Add widget",
            body="Details",
            owner="acme",
            repo="widgets",
        )
        values.update(overrides)
        return Issue(**values)

    def test_creates_issue_with_both_markers(self):
        client = AsyncMock()
        client.create_issue.return_value = {
            "number": 12,
            "html_url": "https://github.com/acme/widgets/issues/12",
        }

        mirror = run_async(GitHubMirrorPublisher(client).create_mirror(self._issue()))

        client.create_issue.assert_awaited_once_with(
            "acme",
            "widgets",
            "[CID:I-1] Add widget",
            "Canonical-ID: I-1\n\nDetails",
        )
        assert mirror.artifact_id == 12
        assert mirror.artifact_url.endswith("/12")

    def test_issue_without_repository_rejected(self):
        client = AsyncMock()
        with pytest.raises(InputValidationError):
            run_async(GitHubMirrorPublisher(client).create_mirror(self._issue(owner=None, repo=None)))
        client.create_issue.assert_not_awaited()

    def test_response_without_number_is_permanent_error(self):
        client = AsyncMock()
        client.create_issue.return_value = {"html_url": "https://github.com/acme/widgets/issues/"}

        with pytest.raises(ExternalPermanentError):
            run_async(GitHubMirrorPublisher(client).create_mirror(self._issue()))
