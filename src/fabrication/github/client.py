"""GitHub API client for the orchestration core.

This module provides an async wrapper around exactly the GitHub REST
operations the core needs:
- Searching issues by canonical ID and reading or creating issues (mirrors)
- Triggering workflow_dispatch runs
- Listing and reading workflow runs, their jobs and artifacts

Every response is mapped onto the error taxonomy in src.fabrication.errors.
The client performs no retries; retry policy belongs to the caller (see
src.fabrication.retry). Every repository-scoped call is preceded by a
RepoAccessPolicy check.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from src.fabrication.errors import (
    AccessDeniedError,
    ExternalPermanentError,
    ExternalTransientError,
    InputValidationError,
    NotFoundError,
    RateLimitError,
)
from src.fabrication.github.policy import AllowAllRepoAccessPolicy, RepoAccessPolicy


logger = logging.getLogger(__name__)


class GitHubClient:
    """Async GitHub API client.

    The token is sent as a bearer credential and never appears in errors
    or log records. base_url may point at a GitHub Enterprise Server API
    root; a trailing slash is ignored.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     run = await client.get_workflow_run("owner", "repo", 42)
    """

    # HTTP status codes that indicate a transient failure
    TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        access_policy: Optional[RepoAccessPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.access_policy = access_policy or AllowAllRepoAccessPolicy()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "Fabrication-Orchestrator/1.0",
        }

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(
        self,
        exc_type: Any,
        exc_val: Any,
        exc_tb: Any,
    ) -> None:
        await self.close()

    def _authorize(self, owner: str, repo: str) -> None:
        """Validate repository coordinates and consult the access policy.

        Raises:
            InputValidationError: If owner or repo is blank.
            AccessDeniedError: If the policy refuses the repository.
        """
        if not owner or not owner.strip() or not repo or not repo.strip():
            raise InputValidationError(
                "Repository owner and name are required",
                repository=f"{owner}/{repo}",
            )
        self.access_policy.check(owner, repo)

    def _parse_int_header(
        self,
        headers: httpx.Headers,
        name: str,
    ) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _rate_limit_error(
        self,
        response: httpx.Response,
        context: Dict[str, Any],
    ) -> RateLimitError:
        """Build a RateLimitError from X-RateLimit-* and Retry-After headers."""
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")

        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={
                "reset_at": reset_at,
                "retry_after": retry_after,
                **context,
            },
        )
        return RateLimitError(
            "GitHub API rate limit exceeded",
            reset_at=reset_at,
            retry_after=retry_after,
            status_code=response.status_code,
            **context,
        )

    def _map_error(
        self,
        response: httpx.Response,
        context: Dict[str, Any],
    ) -> Exception:
        """Map a >= 400 response onto the error taxonomy."""
        status = response.status_code

        if status == 429:
            return self._rate_limit_error(response, context)
        if status == 403:
            remaining = self._parse_int_header(
                response.headers, "x-ratelimit-remaining"
            )
            if remaining == 0:
                return self._rate_limit_error(response, context)

        logger.error(
            "GitHub API error",
            extra={
                "status_code": status,
                "response_body": response.text[:500],
                **context,
            },
        )

        if status in (401, 403):
            return AccessDeniedError(
                f"GitHub refused access: {status}",
                status_code=status,
                **context,
            )
        if status == 404:
            return NotFoundError(
                "GitHub resource not found",
                status_code=status,
                **context,
            )
        if status in self.TRANSIENT_STATUS_CODES or status >= 500:
            return ExternalTransientError(
                f"GitHub API error: {status}",
                status_code=status,
                **context,
            )
        return ExternalPermanentError(
            f"GitHub API error: {status}",
            status_code=status,
            **context,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make a single HTTP request and map failures onto the taxonomy.

        Args:
            method: HTTP method (GET, POST).
            path: API path (e.g., /repos/owner/repo/actions/runs/1).
            json_data: Optional JSON body for the request.
            params: Optional query parameters.
            context: Identifiers attached to logs and errors.

        Returns:
            The successful HTTP response.

        Raises:
            RateLimitError: On 429, or 403 with an exhausted rate limit.
            AccessDeniedError: On other 401/403 responses.
            NotFoundError: On 404.
            ExternalTransientError: On 408/5xx, timeouts and network errors.
            ExternalPermanentError: On any other 4xx.
        """
        context = {"method": method, "path": path, **(context or {})}

        try:
            response = await self.client.request(
                method=method,
                url=path,
                json=json_data,
                params=params,
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "GitHub API request timed out",
                extra={"error": str(e), **context},
            )
            raise ExternalTransientError(
                "GitHub API request timed out", **context
            ) from e
        except httpx.RequestError as e:
            logger.warning(
                "GitHub API request failed",
                extra={"error": str(e), **context},
            )
            raise ExternalTransientError(
                f"GitHub API request failed: {type(e).__name__}", **context
            ) from e

        if response.status_code >= 400:
            raise self._map_error(response, context)

        return response

    def _json(self, response: httpx.Response, context: Dict[str, Any]) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ExternalPermanentError(
                "Malformed JSON response from GitHub",
                status_code=response.status_code,
                **context,
            ) from e

    def _json_list(
        self,
        response: httpx.Response,
        key: str,
        context: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """Extract a list field from a paginated envelope (items, workflow_runs)."""
        data = self._json(response, context)
        if not isinstance(data, dict) or not isinstance(data.get(key), list):
            raise ExternalPermanentError(
                f"GitHub response is missing '{key}'",
                status_code=response.status_code,
                **context,
            )
        return data[key]

    async def search_issues(
        self,
        owner: str,
        repo: str,
        term: str,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        """Search a repository's issues for a literal term.

        The query is ``repo:{owner}/{repo} is:issue "{term}"``. GitHub may
        still return pull requests from the combined index; callers filter
        them.

        Returns:
            Search result items in API order.
        """
        self._authorize(owner, repo)
        context = {"repository": f"{owner}/{repo}"}
        literal = term.replace('"', " ").strip()
        query = f'repo:{owner}/{repo} is:issue "{literal}"'

        logger.debug(
            "Searching issues",
            extra={"query": query, **context},
        )

        response = await self._request(
            method="GET",
            path="/search/issues",
            params={"q": query, "per_page": per_page},
            context=context,
        )
        return self._json_list(response, "items", context)

    async def get_issue(
        self,
        owner: str,
        repo: str,
        issue_number: int,
    ) -> Dict[str, Any]:
        """Get issue details (GitHub returns pull requests here too)."""
        self._authorize(owner, repo)
        context = {"repository": f"{owner}/{repo}", "issue_number": issue_number}

        response = await self._request(
            method="GET",
            path=f"/repos/{owner}/{repo}/issues/{issue_number}",
            context=context,
        )
        return self._json(response, context)

    async def create_issue(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
    ) -> Dict[str, Any]:
        """Create an issue.

        Args:
            owner: Repository owner (user or organization).
            repo: Repository name.
            title: Issue title.
            body: Issue body in markdown format.

        Returns:
            The created issue data from GitHub API.
        """
        self._authorize(owner, repo)
        context = {"repository": f"{owner}/{repo}"}

        logger.info(
            "Creating issue",
            extra={"body_length": len(body), **context},
        )

        response = await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/issues",
            json_data={"title": title, "body": body},
            context=context,
        )
        result = self._json(response, context)

        logger.info(
            "Issue created successfully",
            extra={"issue_number": result.get("number"), **context},
        )
        return result

    async def trigger_workflow(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        ref: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Trigger a workflow_dispatch event.

        GitHub answers 204 without a run identifier; the run must be located
        afterwards with list_workflow_runs.
        """
        self._authorize(owner, repo)
        context = {
            "repository": f"{owner}/{repo}",
            "workflow_id": workflow_id,
            "ref": ref,
        }

        logger.info("Triggering workflow", extra=context)

        await self._request(
            method="POST",
            path=f"/repos/{owner}/{repo}/actions/workflows/{workflow_id}/dispatches",
            json_data={"ref": ref, "inputs": inputs or {}},
            context=context,
        )

    async def list_workflow_runs(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        branch: Optional[str] = None,
        event: Optional[str] = None,
        created_after: Optional[datetime] = None,
        per_page: int = 30,
    ) -> List[Dict[str, Any]]:
        """List runs of a workflow, newest first.

        Args:
            owner: Repository owner.
            repo: Repository name.
            workflow_id: Workflow file name or numeric ID.
            branch: Only runs on this branch.
            event: Only runs triggered by this event.
            created_after: Only runs created at or after this instant.
            per_page: Page size.
        """
        self._authorize(owner, repo)
        context = {"repository": f"{owner}/{repo}", "workflow_id": workflow_id}

        params: Dict[str, Any] = {"per_page": per_page}
        if branch:
            params["branch"] = branch
        if event:
            params["event"] = event
        if created_after is not None:
            stamp = created_after.astimezone(timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            )
            params["created"] = f">={stamp}"

        response = await self._request(
            method="GET",
            path=f"/repos/{owner}/{repo}/actions/workflows/{workflow_id}/runs",
            params=params,
            context=context,
        )
        return self._json_list(response, "workflow_runs", context)

    async def get_workflow_run(
        self,
        owner: str,
        repo: str,
        run_id: int,
    ) -> Dict[str, Any]:
        self._authorize(owner, repo)
        context = {"repository": f"{owner}/{repo}", "external_run_id": run_id}

        response = await self._request(
            method="GET",
            path=f"/repos/{owner}/{repo}/actions/runs/{run_id}",
            context=context,
        )
        return self._json(response, context)

    async def list_run_jobs(
        self,
        owner: str,
        repo: str,
        run_id: int,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        self._authorize(owner, repo)
        context = {"repository": f"{owner}/{repo}", "external_run_id": run_id}

        response = await self._request(
            method="GET",
            path=f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs",
            params={"per_page": per_page},
            context=context,
        )
        return self._json_list(response, "jobs", context)

    async def list_run_artifacts(
        self,
        owner: str,
        repo: str,
        run_id: int,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        self._authorize(owner, repo)
        context = {"repository": f"{owner}/{repo}", "external_run_id": run_id}

        response = await self._request(
            method="GET",
            path=f"/repos/{owner}/{repo}/actions/runs/{run_id}/artifacts",
            params={"per_page": per_page},
            context=context,
        )
        return self._json_list(response, "artifacts", context)

    async def health_check(self) -> bool:
        """Check if the GitHub API is accessible with the configured token."""
        try:
            response = await self.client.get("/rate_limit")
            return response.status_code == 200
        except Exception as e:
            logger.warning(
                "GitHub API health check failed",
                extra={"error": str(e)},
            )
            return False
