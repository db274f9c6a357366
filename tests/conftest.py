"""Pytest configuration and shared fakes for all tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from src.fabrication.errors import NotFoundError
from src.fabrication.events.emitter import EventEmitter
from src.fabrication.events.models import FabricationEvent
from src.fabrication.runs.ledger import InMemoryRunLedger
from src.fabrication.state.memory import InMemoryIssueRepository


def _github_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class FakeGitHub:
    """Scripted stand-in for GitHubClient.

    Issues live in ``issues``; each trigger_workflow call creates a run that
    echoes the correlation token in its display title when ``echo_token``
    is set. Runs become visible to list_workflow_runs unless ``hide_runs``
    is set. ``trigger_error`` fails the trigger before any run exists;
    ``error_after_trigger`` fails it after the run was created. Call counts
    are kept per method.
    """

    def __init__(self, echo_token: bool = True, correlation_input_name: str = "correlation_id"):
        self.echo_token = echo_token
        self.correlation_input_name = correlation_input_name
        self.hide_runs = False
        self.trigger_error: Optional[Exception] = None
        self.error_after_trigger: Optional[Exception] = None
        self.issues: List[Dict[str, Any]] = []
        self.runs: Dict[int, Dict[str, Any]] = {}
        self.hidden_runs: Dict[int, Dict[str, Any]] = {}
        self.jobs: Dict[int, List[Dict[str, Any]]] = {}
        self.artifacts: Dict[int, List[Dict[str, Any]]] = {}
        self.triggers: List[Dict[str, Any]] = []
        self.calls: Dict[str, int] = {}
        self._next_issue = 1
        self._next_run = 1000
        self._base = datetime.now(timezone.utc)
        self._tick = 0

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def _now(self) -> str:
        self._tick += 1
        return _github_time(self._base + timedelta(seconds=self._tick))

    def add_issue(
        self,
        title: str,
        body: str = "",
        pull_request: bool = False,
    ) -> Dict[str, Any]:
        number = self._next_issue
        self._next_issue += 1
        issue = {
            "number": number,
            "title": title,
            "body": body,
            "html_url": f"https://github.com/acme/widgets/issues/{number}",
        }
        if pull_request:
            issue["pull_request"] = {"url": f"https://api.github.com/pulls/{number}"}
        self.issues.append(issue)
        return issue

    def add_run(
        self,
        workflow_id: str = "ci.yml",
        ref: str = "main",
        display_title: str = "CI",
        status: str = "queued",
        conclusion: Optional[str] = None,
    ) -> Dict[str, Any]:
        run_id = self._next_run
        self._next_run += 1
        now = self._now()
        run = {
            "id": run_id,
            "workflow_id": workflow_id,
            "name": "CI",
            "display_title": display_title,
            "event": "workflow_dispatch",
            "head_branch": ref,
            "status": status,
            "conclusion": conclusion,
            "created_at": now,
            "updated_at": now,
            "run_started_at": now,
            "html_url": f"https://github.com/acme/widgets/actions/runs/{run_id}",
            "logs_url": f"https://api.github.com/repos/acme/widgets/actions/runs/{run_id}/logs",
        }
        self.runs[run_id] = run
        return run

    def set_run_status(self, run_id: int, status: str, conclusion: Optional[str] = None) -> None:
        run = self.runs[run_id]
        run["status"] = status
        run["conclusion"] = conclusion
        run["updated_at"] = self._now()

    def reveal_runs(self) -> None:
        self.runs.update(self.hidden_runs)
        self.hidden_runs.clear()

    async def search_issues(self, owner: str, repo: str, term: str, per_page: int = 100):
        self._count("search_issues")
        return [
            dict(issue)
            for issue in self.issues
            if term in (issue.get("title") or "") or term in (issue.get("body") or "")
        ]

    async def get_issue(self, owner: str, repo: str, number: int):
        self._count("get_issue")
        for issue in self.issues:
            if issue["number"] == number:
                return dict(issue)
        raise NotFoundError("Not found", status_code=404)

    async def create_issue(self, owner: str, repo: str, title: str, body: str):
        self._count("create_issue")
        return dict(self.add_issue(title, body))

    async def trigger_workflow(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        ref: str,
        inputs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._count("trigger_workflow")
        await asyncio.sleep(0)
        if self.trigger_error is not None:
            raise self.trigger_error
        inputs = dict(inputs or {})
        self.triggers.append(
            {"owner": owner, "repo": repo, "workflow_id": workflow_id, "ref": ref, "inputs": inputs}
        )
        token = inputs.get(self.correlation_input_name, "")
        title = f"CI {token}" if self.echo_token else "CI"
        run = self.add_run(workflow_id=workflow_id, ref=ref, display_title=title)
        if self.hide_runs:
            self.hidden_runs[run["id"]] = self.runs.pop(run["id"])
        if self.error_after_trigger is not None:
            raise self.error_after_trigger

    async def list_workflow_runs(
        self,
        owner: str,
        repo: str,
        workflow_id: str,
        branch: Optional[str] = None,
        event: Optional[str] = None,
        created_after: Optional[datetime] = None,
        per_page: int = 30,
    ):
        self._count("list_workflow_runs")
        await asyncio.sleep(0)
        runs = [
            dict(run)
            for run in self.runs.values()
            if run["workflow_id"] == workflow_id and (branch is None or run["head_branch"] == branch)
        ]
        return sorted(runs, key=lambda run: run["id"], reverse=True)

    async def get_workflow_run(self, owner: str, repo: str, run_id: int):
        self._count("get_workflow_run")
        if run_id not in self.runs:
            raise NotFoundError("Not found", status_code=404, external_run_id=run_id)
        return dict(self.runs[run_id])

    async def list_run_jobs(self, owner: str, repo: str, run_id: int):
        self._count("list_run_jobs")
        return [dict(job) for job in self.jobs.get(run_id, [])]

    async def list_run_artifacts(self, owner: str, repo: str, run_id: int):
        self._count("list_run_artifacts")
        return [dict(artifact) for artifact in self.artifacts.get(run_id, [])]

    async def close(self) -> None:
        pass


class RecordingEventEmitter(EventEmitter):
    """Emitter that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: List[FabricationEvent] = []

    async def emit(self, event: FabricationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List[FabricationEvent]:
        return [event for event in self.events if event.event_type == event_type]


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def run_ledger() -> InMemoryRunLedger:
    return InMemoryRunLedger()


@pytest.fixture
def issue_repository() -> InMemoryIssueRepository:
    return InMemoryIssueRepository()


@pytest.fixture
def recording_emitter() -> RecordingEventEmitter:
    return RecordingEventEmitter()


@pytest.fixture
def instant_sleep():
    return no_sleep


@pytest.fixture(autouse=True)
def _github_token_env(monkeypatch):
    """Provide the one required setting so get_settings() works in tests."""
    monkeypatch.setenv("FABRICATION_GITHUB_TOKEN", "ghp_test_token")
