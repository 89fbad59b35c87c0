from __future__ import annotations

import secrets
from threading import Event, Lock

from . import db
from .api_models import DeploymentRequest
from .docker_ops import validate_health_path, validate_image_reference, validate_service_name
from .errors import (
    DuplicateRequest,
    ImageNotFound,
    InvalidSpec,
    ReconcilerUnavailable,
    RegistryUnreachable,
    RequestConflict,
    RuntimeUnavailable,
)
from .models import DeploymentSpec, ServiceSpec
from .proxy import ROUTE_RE
from .runtime import RuntimeState
from .settings import settings


class Intake:
    """Validates deployment requests and appends them to the FIFO queue.

    Submission never waits for the deployment; the outcome is visible
    through the store once the reconciler is done.
    """

    def __init__(self, runtime, state: RuntimeState, wake: Event | None = None, max_queue: int | None = None):
        self.runtime = runtime
        self.state = state
        self.wake = wake
        self.max_queue = settings.max_queue if max_queue is None else max_queue
        self._lock = Lock()

    def _reject(self, reason: str) -> InvalidSpec:
        self.state.incr("rejected")
        return InvalidSpec(reason)

    def _validate(self, request: DeploymentRequest) -> list[ServiceSpec]:
        if not request.services:
            raise self._reject("at least one service is required")
        names: set[str] = set()
        routes: set[str] = set()
        out: list[ServiceSpec] = []
        for s in request.services:
            try:
                validate_service_name(s.name)
                validate_image_reference(s.image_reference)
                validate_health_path(s.health_check_path)
            except ValueError as e:
                raise self._reject(f"{s.name or '<unnamed>'}: {e}") from e
            if s.name in names:
                raise self._reject(f"duplicate service name '{s.name}'")
            names.add(s.name)

            route = s.proxy_route or f"/{s.name}/"
            if not ROUTE_RE.match(route):
                raise self._reject(f"{s.name}: invalid proxy route '{route}'")
            if route in routes:
                raise self._reject(f"{s.name}: proxy route '{route}' is used twice")
            routes.add(route)

            out.append(
                ServiceSpec(
                    name=s.name,
                    image_reference=s.image_reference,
                    image_digest="",
                    container_port=s.container_port or settings.default_container_port,
                    health_check_path=s.health_check_path,
                    proxy_route=route,
                )
            )
        return out

    def _resolve(self, services: list[ServiceSpec]) -> tuple[ServiceSpec, ...]:
        resolved = []
        for s in services:
            try:
                digest = self.runtime.resolve(s.image_reference)
            except ImageNotFound as e:
                raise self._reject(f"{s.name}: {e}") from e
            except (RegistryUnreachable, RuntimeUnavailable) as e:
                raise ReconcilerUnavailable(f"{s.name}: cannot resolve image digest: {e}") from e
            resolved.append(
                ServiceSpec(
                    name=s.name,
                    image_reference=s.image_reference,
                    image_digest=digest,
                    container_port=s.container_port,
                    health_check_path=s.health_check_path,
                    proxy_route=s.proxy_route,
                )
            )
        return tuple(resolved)

    def submit(self, request: DeploymentRequest) -> db.RequestRow:
        if not self.state.accepting():
            raise ReconcilerUnavailable(self.state.fatal_error or "reconciler is not running")

        services = self._validate(request)
        spec = DeploymentSpec(
            spec_version=secrets.token_hex(6),
            services=self._resolve(services),
            prune=request.prune,
        )

        with self._lock:
            if db.queue_length() >= self.max_queue:
                raise ReconcilerUnavailable(f"queue is full ({self.max_queue} pending)")
            existing = db.pending_with_fingerprint(spec.fingerprint())
            if existing:
                raise DuplicateRequest(existing.id)
            row = db.insert_request(spec)

        self.state.incr("submitted")
        summary = ", ".join(f"{s.name}={s.image_digest}" for s in spec.services)
        db.log_event("INFO", f"Queued deployment: {summary}", request_id=row.id)
        if self.wake is not None:
            self.wake.set()
        return row

    def withdraw(self, request_id: str) -> db.RequestRow:
        row = db.get_request(request_id)
        if not row:
            raise KeyError(request_id)
        if not db.withdraw_request(request_id):
            raise RequestConflict(f"deployment {request_id} is already {db.get_request(request_id).state}")
        self.state.incr("withdrawn")
        db.log_event("INFO", "Deployment withdrawn before it started", request_id=request_id)
        return db.get_request(request_id)
