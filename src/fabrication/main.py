"""FastAPI application entry point for the fabrication orchestrator.

This module exposes a thin HTTP surface over FabricationOrchestrator:
issue creation and transitions, mirror resolution, and workflow run
dispatch, polling and ingestion. Errors from the orchestration core are
mapped to HTTP status codes by a single exception handler.

Stores are PostgreSQL-backed when ``FABRICATION_DATABASE_URL`` is set, and
in-memory otherwise (local development).
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from src.fabrication.config import FabricationSettings, get_settings
from src.fabrication.errors import (
    AccessDeniedError,
    ExternalPermanentError,
    ExternalTransientError,
    FabricationError,
    InputValidationError,
    InvalidTransitionError,
    IssueNotActiveError,
    IssueNotFoundError,
    MirrorReferenceConflictError,
    RunNotTerminalError,
    RunRecordNotFoundError,
    TerminalIssueError,
    UnexpectedStateError,
    VersionConflictError,
)
from src.fabrication.events.emitter import EventEmitter, EventSinkType, create_event_emitter
from src.fabrication.events.metrics import generate_metrics_output
from src.fabrication.github.client import GitHubClient
from src.fabrication.github.mirror import GitHubMirrorPublisher
from src.fabrication.github.policy import AllowlistRepoAccessPolicy
from src.fabrication.orchestrator import FabricationOrchestrator
from src.fabrication.resolver.resolver import CanonicalIdResolver
from src.fabrication.runs.adapter import RunAdapter
from src.fabrication.runs.ledger import InMemoryRunLedger
from src.fabrication.runs.postgres import PostgresRunLedger
from src.fabrication.state.machine import IssueStateMachine
from src.fabrication.state.memory import InMemoryIssueRepository
from src.fabrication.state.models import IssueState
from src.fabrication.state.repository import PostgresIssueRepository, PostgresPool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Error classes mapped to HTTP status codes; the first match wins
_ERROR_STATUS = [
    (InputValidationError, 400),
    (AccessDeniedError, 403),
    (IssueNotFoundError, 404),
    (RunRecordNotFoundError, 404),
    (InvalidTransitionError, 409),
    (TerminalIssueError, 409),
    (IssueNotActiveError, 409),
    (UnexpectedStateError, 409),
    (VersionConflictError, 409),
    (MirrorReferenceConflictError, 409),
    (RunNotTerminalError, 409),
    (ExternalPermanentError, 502),
    (ExternalTransientError, 503),
]


def status_for_error(error: FabricationError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


@dataclass
class FabricationServices:
    """Wired components shared by the request handlers."""

    orchestrator: FabricationOrchestrator
    github_client: GitHubClient
    stores: List[Any] = field(default_factory=list)
    db: Optional[PostgresPool] = None

    async def health(self) -> Dict[str, str]:
        statuses = {}
        for store in self.stores:
            name = type(store).__name__
            try:
                healthy = await store.health_check()
            except Exception as e:
                logger.warning(
                    "Store health check failed",
                    extra={"store": name, "error": str(e)},
                )
                healthy = False
            statuses[name] = "healthy" if healthy else "unhealthy"
        return statuses

    async def close(self) -> None:
        await self.github_client.close()
        if self.db is not None:
            await self.db.disconnect()


def build_services(
    settings: FabricationSettings,
    github_client: Optional[GitHubClient] = None,
    db: Optional[PostgresPool] = None,
    event_emitter: Optional[EventEmitter] = None,
) -> FabricationServices:
    """Wire all orchestration dependencies.

    Args:
        settings: Validated settings.
        github_client: Client to use; built from settings when omitted.
        db: Connected pool; in-memory stores are used when omitted.
        event_emitter: Emitter to use; logging plus metrics when omitted.

    Returns:
        Fully wired FabricationServices.
    """
    if github_client is None:
        github_client = GitHubClient(
            token=settings.github_token,
            base_url=settings.github_base_url,
            timeout=settings.request_timeout_seconds,
            access_policy=AllowlistRepoAccessPolicy(settings.allowed_repository_list),
        )

    if db is not None:
        issue_repository: Any = PostgresIssueRepository(db)
        ledger: Any = PostgresRunLedger(db)
    else:
        issue_repository = InMemoryIssueRepository()
        ledger = InMemoryRunLedger()

    if event_emitter is None:
        event_emitter = create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.METRICS]
        )

    orchestrator = FabricationOrchestrator.from_settings(
        settings,
        state_machine=IssueStateMachine(issue_repository),
        resolver=CanonicalIdResolver(github_client),
        mirror_publisher=GitHubMirrorPublisher(github_client),
        run_adapter=RunAdapter.from_settings(settings, github_client, ledger),
        event_emitter=event_emitter,
    )
    return FabricationServices(
        orchestrator=orchestrator,
        github_client=github_client,
        stores=[issue_repository, ledger],
        db=db,
    )


def _log_configuration(settings: FabricationSettings) -> None:
    logger.info("Fabrication configuration:")
    for name, value in settings.redacted().items():
        logger.info("  %s: %s", name, value)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown.

    Services attached to ``app.state.services`` before startup are used as
    is; otherwise they are built from the environment settings.
    """
    services: Optional[FabricationServices] = getattr(app.state, "services", None)
    owned = services is None

    if owned:
        logger.info("Fabrication orchestrator starting up...")
        settings = get_settings()
        _log_configuration(settings)

        db = None
        if settings.database_url:
            db = PostgresPool(
                settings.database_url,
                command_timeout=settings.request_timeout_seconds,
            )
            await db.connect()

        services = build_services(settings, db=db)
        app.state.services = services
        logger.info("Fabrication orchestrator started successfully")

    yield

    if owned and services is not None:
        logger.info("Fabrication orchestrator shutting down...")
        await services.close()
        logger.info("Fabrication orchestrator shutdown complete")


class CreateIssueRequest(BaseModel):
    canonical_id: str
    title: str = ""
    body: str = ""
    owner: Optional[str] = None
    repo: Optional[str] = None


class TransitionRequest(BaseModel):
    to_state: IssueState
    actor: str = "api"
    details: Dict[str, Any] = Field(default_factory=dict)
    expected_state: Optional[IssueState] = None
    workflow_id: Optional[str] = None
    ref: Optional[str] = None
    inputs: Optional[Dict[str, Any]] = None


class DispatchRequest(BaseModel):
    owner: str
    repo: str
    workflow_id: str
    ref: str
    correlation_key: str
    inputs: Optional[Dict[str, Any]] = None


def create_app(services: Optional[FabricationServices] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        services: Pre-wired services (tests); built at startup when omitted.
    """
    app = FastAPI(
        title="Fabrication Orchestrator",
        description="Canonical issue lifecycle with GitHub mirrors and workflow runs",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    def _orchestrator(request: Request) -> FabricationOrchestrator:
        return request.app.state.services.orchestrator

    @app.exception_handler(FabricationError)
    async def fabrication_error_handler(request: Request, exc: FabricationError):
        status_code = status_for_error(exc)
        log = logger.warning if status_code < 500 else logger.error
        log(
            "Request failed",
            extra={
                "path": request.url.path,
                "error_type": type(exc).__name__,
                "status_code": status_code,
                "error": str(exc),
            },
        )
        return JSONResponse(
            status_code=status_code,
            content=jsonable_encoder(
                {
                    "error": type(exc).__name__,
                    "message": exc.message,
                    "context": exc.context,
                }
            ),
        )

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness probe endpoint.

        Returns 503 when any store fails its health check.
        """
        dependencies = await request.app.state.services.health()
        is_ready = all(status == "healthy" for status in dependencies.values())
        return JSONResponse(
            status_code=200 if is_ready else 503,
            content={
                "status": "ready" if is_ready else "not_ready",
                "dependencies": dependencies,
            },
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/issues", status_code=201)
    async def create_issue(body: CreateIssueRequest, request: Request):
        issue = await _orchestrator(request).create_issue(
            body.canonical_id,
            title=body.title,
            body=body.body,
            owner=body.owner,
            repo=body.repo,
        )
        return jsonable_encoder(issue)

    @app.get("/issues/{issue_id}")
    async def get_issue(issue_id: str, request: Request):
        return jsonable_encoder(await _orchestrator(request).get_issue(issue_id))

    @app.post("/issues/{issue_id}/transitions")
    async def transition_issue(issue_id: str, body: TransitionRequest, request: Request):
        outcome = await _orchestrator(request).transition_issue(
            issue_id,
            body.to_state,
            actor=body.actor,
            details=body.details,
            expected_state=body.expected_state,
            workflow_id=body.workflow_id,
            ref=body.ref,
            inputs=body.inputs,
        )
        return jsonable_encoder(outcome)

    @app.post("/issues/{issue_id}/runs/sync")
    async def sync_runs(issue_id: str, request: Request):
        results = await _orchestrator(request).sync_runs(issue_id)
        return jsonable_encoder({"results": results})

    @app.get("/mirrors/resolve")
    async def resolve_mirror(
        request: Request,
        owner: str = Query(...),
        repo: str = Query(...),
        canonical_id: str = Query(...),
    ):
        result = await _orchestrator(request).resolver.resolve(owner, repo, canonical_id)
        return jsonable_encoder(result)

    @app.post("/runs/dispatch")
    async def dispatch_run(body: DispatchRequest, request: Request):
        result = await _orchestrator(request).dispatch_run(
            body.owner,
            body.repo,
            body.workflow_id,
            body.ref,
            correlation_key=body.correlation_key,
            inputs=body.inputs,
        )
        return jsonable_encoder(result)

    @app.post("/runs/{external_run_id}/poll")
    async def poll_run(external_run_id: int, request: Request):
        result = await _orchestrator(request).poll_and_apply(external_run_id)
        return jsonable_encoder(result)

    @app.post("/runs/{external_run_id}/ingest")
    async def ingest_run(external_run_id: int, request: Request):
        adapter = _orchestrator(request).run_adapter
        record = await adapter.get_run(external_run_id)
        if record is None:
            raise RunRecordNotFoundError(
                "No run record for external run",
                external_run_id=external_run_id,
            )
        result = await adapter.ingest(record.owner, record.repo, external_run_id)
        return jsonable_encoder(result)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.fabrication.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
