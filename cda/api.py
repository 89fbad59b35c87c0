from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass
from threading import Event
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .api_models import DeploymentRequest, DeploymentStatus, SubmitResponse
from .docker_ops import DockerRuntime
from .errors import DeploymentError, InvalidSpec, PersistenceFailure, ReconcilerUnavailable, RequestConflict
from .intake import Intake
from .proxy import ProxyConfigManager
from .reconciler import Reconciler
from .runtime import RuntimeState
from .settings import settings


security = HTTPBasic(auto_error=False)


@dataclass
class Agent:
    state: RuntimeState
    runtime: Any
    proxy: ProxyConfigManager
    reconciler: Reconciler
    intake: Intake


def build_agent() -> Agent:
    state = RuntimeState()
    wake = Event()
    runtime = DockerRuntime()
    proxy = ProxyConfigManager()
    reconciler = Reconciler(runtime, proxy, state, wake=wake)
    intake = Intake(runtime, state, wake=wake)
    return Agent(state=state, runtime=runtime, proxy=proxy, reconciler=reconciler, intake=intake)


def require_operator(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
    """Basic auth on mutating routes, enabled when CDA_API_USER/CDA_API_PASSWORD are set."""
    if not (settings.api_user and settings.api_password):
        return "anonymous"
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.api_user)
        and secrets.compare_digest(credentials.password, settings.api_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


def _error(code: int, error: str, detail: Any) -> JSONResponse:
    return JSONResponse(status_code=code, content={"error": error, "detail": detail})


def _status(row: db.RequestRow) -> DeploymentStatus:
    record = db.get_record(row.record_id) if row.record_id is not None else None
    if record is not None:
        services = [asdict(s) for _, s in sorted(record.services.items())]
    else:
        services = [asdict(s) for s in row.spec.services]
    return DeploymentStatus(
        id=row.id,
        state=row.state,
        result=record.result if record else None,
        detail=row.detail,
        services=services,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def create_app(agent: Agent | None = None, start_worker: bool = True) -> FastAPI:
    agent = agent or build_agent()
    app = FastAPI(title="Continuous Deployment Agent")
    app.state.agent = agent

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        if not start_worker:
            return
        try:
            agent.reconciler.recover()
        except DeploymentError as e:
            db.log_event("ERROR", f"Recovery failed, reconciler not started: {type(e).__name__}: {e}")
            return
        agent.reconciler.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        if start_worker:
            agent.reconciler.stop(timeout=5)

    @app.exception_handler(RequestValidationError)
    def on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "InvalidSpec", jsonable_encoder(exc.errors()))

    @app.exception_handler(InvalidSpec)
    def on_invalid_spec(request: Request, exc: InvalidSpec) -> JSONResponse:
        return _error(400, "InvalidSpec", str(exc))

    @app.exception_handler(RequestConflict)
    def on_conflict(request: Request, exc: RequestConflict) -> JSONResponse:
        return _error(409, type(exc).__name__, str(exc))

    @app.exception_handler(ReconcilerUnavailable)
    def on_unavailable(request: Request, exc: ReconcilerUnavailable) -> JSONResponse:
        return _error(503, "ReconcilerUnavailable", str(exc))

    @app.exception_handler(PersistenceFailure)
    def on_persistence_failure(request: Request, exc: PersistenceFailure) -> JSONResponse:
        return _error(503, "PersistenceFailure", str(exc))

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/status")
    def agent_status() -> dict[str, Any]:
        snap = agent.state.snapshot()
        snap["queue_length"] = db.queue_length()
        snap["active_record_id"] = db.active_record_id()
        snap["proxy_config_version"] = agent.proxy.current_version()
        return snap

    @app.post("/deployments", status_code=status.HTTP_202_ACCEPTED, response_model=SubmitResponse)
    def submit(req: DeploymentRequest, user: str = Depends(require_operator)) -> SubmitResponse:
        row = agent.intake.submit(req)
        return SubmitResponse(id=row.id, state=row.state)

    @app.get("/deployments")
    def list_deployments(limit: int = 50) -> list[DeploymentStatus]:
        return [_status(r) for r in db.list_requests(limit=max(1, min(500, limit)))]

    @app.get("/deployments/active")
    def active() -> dict[str, Any]:
        record = db.get_active()
        if record is None:
            raise HTTPException(status_code=404, detail="no deployment is active yet")
        return record.to_dict()

    @app.get("/deployments/{request_id}", response_model=DeploymentStatus)
    def get_deployment(request_id: str) -> DeploymentStatus:
        row = db.get_request(request_id)
        if row is None:
            raise HTTPException(status_code=404, detail="unknown deployment")
        return _status(row)

    @app.delete("/deployments/{request_id}", response_model=DeploymentStatus)
    def withdraw(request_id: str, user: str = Depends(require_operator)) -> DeploymentStatus:
        try:
            row = agent.intake.withdraw(request_id)
        except KeyError:
            raise HTTPException(status_code=404, detail="unknown deployment")
        return _status(row)

    @app.get("/records")
    def records(limit: int = 50) -> list[dict[str, Any]]:
        return [r.to_dict() for r in db.list_records(limit=max(1, min(500, limit)))]

    @app.get("/events")
    def events(limit: int = 100) -> list[dict[str, Any]]:
        return db.latest_events(limit=max(1, min(1000, limit)))

    return app
