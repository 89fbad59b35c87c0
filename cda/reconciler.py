from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from threading import Event, Thread
from typing import Any, Callable

from . import db
from .alerts import alert_deployment, alert_fatal
from .docker_ops import ContainerRef, StartConfig, container_http_base
from .errors import (
    ConfigSyntaxError,
    HealthCheckFailed,
    ImageNotFound,
    InvalidSpec,
    PersistenceFailure,
    RegistryUnreachable,
)
from .health import BackoffPolicy, HealthResult, wait_healthy
from .models import (
    RESULT_FAILED,
    RESULT_ROLLED_BACK,
    RESULT_SUCCESS,
    DeploymentRecord,
    DeploymentSpec,
    ProxyConfig,
    ServiceRecord,
    ServiceSpec,
)
from .proxy import ProxyConfigManager
from .runtime import (
    PHASE_FINALIZING,
    PHASE_HEALTH_CHECKING,
    PHASE_IDLE,
    PHASE_PLANNING,
    PHASE_PULLING,
    PHASE_ROLLING_BACK,
    PHASE_STARTING,
    PHASE_SWITCHING,
    RuntimeState,
)
from .settings import settings


logger = logging.getLogger(__name__)


@dataclass
class _Attempt:
    spec: DeploymentSpec
    active: DeploymentRecord | None
    proxy_before: int | None
    changed: list[ServiceSpec] = field(default_factory=list)
    kept: dict[str, ServiceRecord] = field(default_factory=dict)
    removed: list[ServiceRecord] = field(default_factory=list)
    started: dict[str, ContainerRef] = field(default_factory=dict)
    proxy_touched: bool = False

    @property
    def request_id(self) -> str:
        return self.spec.spec_version


class Reconciler:
    """Drives the running system from the active deployment to a queued spec.

    One spec at a time, in submission order. New containers always start
    next to the old ones and the proxy only switches once they are healthy,
    so every failure before finalizing leaves the previous deployment
    serving.
    """

    def __init__(
        self,
        runtime: Any,
        proxy: ProxyConfigManager,
        state: RuntimeState,
        *,
        wake: Event | None = None,
        prober: Callable[..., tuple[HealthResult, str]] = wait_healthy,
        sleep: Callable[[float], None] = time.sleep,
        pull_retries: int | None = None,
        pull_backoff_s: float | None = None,
        health_timeout_s: float | None = None,
        backoff: BackoffPolicy | None = None,
        max_parallel: int | None = None,
    ) -> None:
        self.runtime = runtime
        self.proxy = proxy
        self.state = state
        self.wake = wake or Event()
        self.prober = prober
        self.sleep = sleep
        self.pull_retries = settings.pull_retries if pull_retries is None else pull_retries
        self.pull_backoff_s = settings.pull_backoff_s if pull_backoff_s is None else pull_backoff_s
        self.health_timeout_s = settings.health_timeout_s if health_timeout_s is None else health_timeout_s
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.max_parallel = max(1, settings.max_parallel if max_parallel is None else max_parallel)
        self._stop = Event()
        self._thr: Thread | None = None

    # -- worker ----------------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self.state.set_worker_alive(True)
        self._thr = Thread(target=self._loop, name="cda-reconciler", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        self.wake.set()
        if self._thr:
            self._thr.join(timeout)

    def _loop(self) -> None:
        try:
            db.log_event("INFO", "Reconciler started")
            while not self._stop.is_set():
                try:
                    while not self._stop.is_set() and self.run_once() is not None:
                        pass
                except PersistenceFailure as e:
                    self._fatal(e)
                    return
                except Exception as e:
                    db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
                self.wake.wait(timeout=max(1, settings.poll_interval_s))
                self.wake.clear()
        except PersistenceFailure as e:
            self._fatal(e)
        finally:
            self.state.set_worker_alive(False)

    def _fatal(self, error: PersistenceFailure) -> None:
        message = f"Persistence failure, reconciler stopped: {error}"
        self.state.mark_fatal(message)
        self.state.set_phase(PHASE_IDLE)
        # The store is what failed, so the event table may not be writable.
        logger.critical(message)
        alert_fatal(message)

    # -- one reconciliation ----------------------------------------------

    def _phase(self, attempt: _Attempt, phase: str) -> None:
        self.state.set_phase(phase, attempt.request_id)
        db.set_request_state(attempt.request_id, phase)

    def run_once(self) -> DeploymentRecord | None:
        """Reconcile the oldest queued spec. Returns its record, or None if the queue is empty."""
        row = db.claim_next_request()
        if row is None:
            return None
        spec = row.spec
        self.state.set_phase(PHASE_PLANNING, spec.spec_version)
        attempt = _Attempt(spec=spec, active=db.get_active(), proxy_before=self.proxy.current_version())
        try:
            try:
                self._plan(attempt)
                if attempt.changed:
                    self._pull(attempt)
                    self._start(attempt)
                    self._health_check(attempt)
                services, version = self._switch(attempt)
                record = self._commit(attempt, services, version)
            except PersistenceFailure:
                raise
            except Exception as e:
                return self._roll_back(attempt, e)
            # Committed: nothing past this point may roll the attempt back.
            self._retire_old(attempt, record)
            return record
        finally:
            self.state.set_phase(PHASE_IDLE)

    def _plan(self, attempt: _Attempt) -> None:
        """Split the spec into services to (re)start and services left untouched."""
        active_services = attempt.active.services if attempt.active else {}
        for s in attempt.spec.services:
            cur = active_services.get(s.name)
            if (
                cur is not None
                and cur.image_digest == s.image_digest
                and cur.container_port == s.container_port
                and self.runtime.inspect(cur.container_id).running
            ):
                attempt.kept[s.name] = replace(cur, health_check_path=s.health_check_path, proxy_route=s.proxy_route)
            else:
                attempt.changed.append(s)

        for name, cur in active_services.items():
            if attempt.spec.service(name) is not None:
                continue
            if attempt.spec.prune:
                attempt.removed.append(cur)
            else:
                attempt.kept[name] = cur

        # Carried-over services keep their routes; a new service may not take one.
        owners: dict[str, str] = {}
        for name, route in [(n, r.proxy_route) for n, r in attempt.kept.items()] + [(s.name, s.proxy_route) for s in attempt.changed]:
            if route in owners and owners[route] != name:
                raise InvalidSpec(f"{name}: proxy route '{route}' is already served by '{owners[route]}'")
            owners[route] = name

        db.log_event(
            "INFO",
            f"Planned: {len(attempt.changed)} to start, {len(attempt.kept)} unchanged, {len(attempt.removed)} to remove",
            request_id=attempt.request_id,
        )

    def _fan_out(self, fn: Callable[[ServiceSpec], Any], items: list[ServiceSpec]) -> list[tuple[ServiceSpec, Any, Exception | None]]:
        """Run `fn` for every item on a bounded pool and wait for all of them."""
        if not items:
            return []
        out: list[tuple[ServiceSpec, Any, Exception | None]] = []
        with ThreadPoolExecutor(max_workers=min(self.max_parallel, len(items))) as pool:
            futures = {pool.submit(fn, item): item for item in items}
            for fut in as_completed(futures):
                item = futures[fut]
                try:
                    out.append((item, fut.result(), None))
                except Exception as e:
                    out.append((item, None, e))
        return out

    @staticmethod
    def _raise_first(results: list[tuple[ServiceSpec, Any, Exception | None]]) -> None:
        for _, _, err in results:
            if err is not None:
                raise err

    def _pull_one(self, s: ServiceSpec, request_id: str) -> str:
        attempt = 0
        while True:
            try:
                return self.runtime.pull(s.image_digest)
            except (ImageNotFound, RegistryUnreachable) as e:
                if attempt >= self.pull_retries:
                    raise
                attempt += 1
                delay = self.pull_backoff_s * attempt
                db.log_event(
                    "WARN",
                    f"Pull failed ({e}); retry {attempt}/{self.pull_retries} in {delay:g}s",
                    service_name=s.name,
                    request_id=request_id,
                )
                self.sleep(delay)

    def _pull(self, attempt: _Attempt) -> None:
        self._phase(attempt, PHASE_PULLING)
        self._raise_first(self._fan_out(lambda s: self._pull_one(s, attempt.request_id), attempt.changed))

    def _start(self, attempt: _Attempt) -> None:
        self._phase(attempt, PHASE_STARTING)

        def start_one(s: ServiceSpec) -> ContainerRef:
            cfg = StartConfig(container_port=s.container_port, request_id=attempt.request_id)
            return self.runtime.start(s.name, s.image_digest, cfg)

        results = self._fan_out(start_one, attempt.changed)
        for s, ref, err in results:
            if err is None:
                attempt.started[s.name] = ref
                self.state.incr("container_starts")
                db.log_event("INFO", f"Started {ref.name} from {s.image_digest}", service_name=s.name, request_id=attempt.request_id)
        self._raise_first(results)

    def _health_check(self, attempt: _Attempt) -> None:
        self._phase(attempt, PHASE_HEALTH_CHECKING)

        def probe(s: ServiceSpec) -> tuple[HealthResult, str]:
            ref = attempt.started[s.name]
            endpoint = f"{container_http_base(ref.name, s.container_port)}{s.health_check_path}"
            return self.prober(s.name, endpoint, self.health_timeout_s, self.backoff)

        failures = []
        for s, res, err in self._fan_out(probe, attempt.changed):
            if err is not None:
                failures.append(f"{s.name}: {type(err).__name__}: {err}")
                continue
            result, msg = res
            if result != HealthResult.HEALTHY:
                failures.append(f"{s.name}: {result.value}: {msg.removeprefix(f'{s.name}: ')}")
        if failures:
            raise HealthCheckFailed("; ".join(sorted(failures)))

    def _target_services(self, attempt: _Attempt) -> dict[str, ServiceRecord]:
        services = dict(attempt.kept)
        for s in attempt.changed:
            ref = attempt.started[s.name]
            services[s.name] = ServiceRecord(
                name=s.name,
                image_digest=s.image_digest,
                container_id=ref.id,
                container_name=ref.name,
                container_port=s.container_port,
                health_check_path=s.health_check_path,
                proxy_route=s.proxy_route,
                status="running",
            )
        return services

    def _active_proxy_config(self) -> ProxyConfig | None:
        try:
            return self.proxy.active_config()
        except ConfigSyntaxError:
            return None

    def _switch(self, attempt: _Attempt) -> tuple[dict[str, ServiceRecord], int | None]:
        self._phase(attempt, PHASE_SWITCHING)
        services = self._target_services(attempt)
        candidate = DeploymentRecord(
            spec_version=attempt.request_id, services=services, proxy_config_version=None, result=RESULT_SUCCESS
        )
        config = self.proxy.render(candidate)
        current = self._active_proxy_config()
        if config.same_rules(current):
            return services, current.version
        if current is None and not config.rules:
            return services, attempt.proxy_before

        self.proxy.validate(config)
        attempt.proxy_touched = True
        version = self.proxy.apply(config)
        self.state.incr("proxy_applies")
        db.log_event("INFO", f"Proxy switched to config version {version}", request_id=attempt.request_id)
        return services, version

    def _commit(self, attempt: _Attempt, services: dict[str, ServiceRecord], version: int | None) -> DeploymentRecord:
        self._phase(attempt, PHASE_FINALIZING)
        record = db.commit_active(
            DeploymentRecord(
                spec_version=attempt.request_id,
                services=services,
                proxy_config_version=version,
                result=RESULT_SUCCESS,
                detail=f"{len(attempt.changed)} service(s) updated",
            ),
            attempt.active.id if attempt.active else None,
        )
        db.conclude_request(attempt.request_id, record.id, record.detail)
        self.state.incr("succeeded")
        return record

    def _retire_old(self, attempt: _Attempt, record: DeploymentRecord) -> None:
        """Stop containers the committed record no longer references.

        Anything that fails to stop is swept by recover() on the next start.
        """
        old = [attempt.active.services[s.name] for s in attempt.changed if attempt.active and s.name in attempt.active.services]
        for rec in old + attempt.removed:
            try:
                self.runtime.stop(rec.container_id)
                self.state.incr("container_stops")
                db.log_event("INFO", f"Stopped old container {rec.container_name}", service_name=rec.name, request_id=attempt.request_id)
            except PersistenceFailure:
                raise
            except Exception as e:
                db.log_event(
                    "WARN",
                    f"Could not stop old container {rec.container_name}: {type(e).__name__}: {e}",
                    service_name=rec.name,
                    request_id=attempt.request_id,
                )

        db.log_event("INFO", f"Deployment succeeded (record {record.id})", request_id=attempt.request_id)

    def _restore_proxy(self, version: int | None) -> None:
        """Make the proxy serve `version` again; None means no routes at all."""
        if version is None:
            current = self._active_proxy_config()
            if current is not None and current.rules:
                self.proxy.apply(self.proxy.empty())
            return
        if self.proxy.current_version() != version:
            self.proxy.rollback(version)

    def _roll_back(self, attempt: _Attempt, error: Exception) -> DeploymentRecord:
        self._phase(attempt, PHASE_ROLLING_BACK)
        reason = f"{type(error).__name__}: {error}"
        db.log_event("ERROR", f"Deployment failed, rolling back: {reason}", request_id=attempt.request_id)

        problems: list[str] = []
        if attempt.proxy_touched:
            try:
                self._restore_proxy(attempt.proxy_before)
                db.log_event("INFO", f"Proxy restored to config version {attempt.proxy_before}", request_id=attempt.request_id)
            except PersistenceFailure:
                raise
            except Exception as e:
                problems.append(f"proxy restore failed: {type(e).__name__}: {e}")

        # Compensation errors turn the result into failed.
        for name, ref in attempt.started.items():
            try:
                self.runtime.stop(ref.id)
                self.state.incr("container_stops")
            except PersistenceFailure:
                raise
            except Exception as e:
                problems.append(f"could not stop {ref.name}: {type(e).__name__}: {e}")

        services = {}
        for s in attempt.changed:
            ref = attempt.started.get(s.name)
            services[s.name] = ServiceRecord(
                name=s.name,
                image_digest=s.image_digest,
                container_id=ref.id if ref else "",
                container_name=ref.name if ref else "",
                container_port=s.container_port,
                health_check_path=s.health_check_path,
                proxy_route=s.proxy_route,
                status="stopped" if ref else "not_started",
            )

        result = RESULT_FAILED if problems else RESULT_ROLLED_BACK
        detail = reason if not problems else f"{reason}; {'; '.join(problems)}"
        record = db.append_record(
            DeploymentRecord(
                spec_version=attempt.request_id,
                services=services,
                proxy_config_version=attempt.proxy_before,
                result=result,
                detail=detail,
            )
        )
        db.conclude_request(attempt.request_id, record.id, detail)
        self.state.incr("rolled_back" if result == RESULT_ROLLED_BACK else "failed")
        db.log_event("ERROR" if problems else "WARN", f"Deployment {result} (record {record.id}): {detail}", request_id=attempt.request_id)
        alert_deployment(result, attempt.request_id, detail)
        return record

    # -- crash recovery --------------------------------------------------

    def _proxy_matches(self, active: DeploymentRecord | None) -> bool:
        if active is None or active.proxy_config_version is None:
            current = self._active_proxy_config()
            return current is None or not current.rules
        return self.proxy.current_version() == active.proxy_config_version

    def recover(self) -> list[DeploymentRecord]:
        """Converge to the last confirmed-active deployment after a restart.

        An attempt that was claimed but never concluded is treated as an
        unfinished rollback: the proxy goes back to the active record's
        version and every managed container outside that record is stopped.
        If the attempt had already been made active, it is completed instead.
        """
        active = db.get_active()
        keep_ids = {s.container_id for s in active.services.values()} if active else set()
        interrupted = db.unfinished_requests()
        managed = self.runtime.list_managed()
        stray = [c for c in managed if c.id not in keep_ids]
        proxy_ok = self._proxy_matches(active)

        problems: list[str] = []
        if not interrupted and not stray and proxy_ok:
            self._report_missing(active)
            return []

        self.state.set_phase(PHASE_ROLLING_BACK, interrupted[0].id if interrupted else None)
        try:
            if not proxy_ok:
                try:
                    self._restore_proxy(active.proxy_config_version if active else None)
                    db.log_event("WARN", "Recovery: proxy restored to the active deployment")
                except PersistenceFailure:
                    raise
                except Exception as e:
                    problems.append(f"proxy restore failed: {type(e).__name__}: {e}")

            for c in stray:
                try:
                    self.runtime.stop(c.id)
                    self.state.incr("container_stops")
                    db.log_event("WARN", f"Recovery: stopped container {c.name} not in the active deployment", service_name=c.service)
                except PersistenceFailure:
                    raise
                except Exception as e:
                    problems.append(f"could not stop {c.name}: {type(e).__name__}: {e}")

            records = []
            for row in interrupted:
                records.append(self._conclude_interrupted(row, active, stray, problems))
        finally:
            self.state.set_phase(PHASE_IDLE)

        self._report_missing(active)
        return records

    def _conclude_interrupted(self, row: db.RequestRow, active: DeploymentRecord | None, stray: list, problems: list[str]) -> DeploymentRecord:
        if active is not None and active.spec_version == row.id:
            # Crashed after the pointer swap: the attempt had already succeeded.
            db.conclude_request(row.id, active.id, "completed during recovery")
            db.log_event("INFO", "Recovery: deployment was already active, finalized", request_id=row.id)
            return active

        spec = row.spec
        by_service = {c.service: c for c in stray if c.request_id == row.id}
        services = {}
        for s in spec.services:
            c = by_service.get(s.name)
            services[s.name] = ServiceRecord(
                name=s.name,
                image_digest=s.image_digest,
                container_id=c.id if c else "",
                container_name=c.name if c else "",
                container_port=s.container_port,
                health_check_path=s.health_check_path,
                proxy_route=s.proxy_route,
                status="stopped" if c else "not_started",
            )
        result = RESULT_FAILED if problems else RESULT_ROLLED_BACK
        detail = f"interrupted in phase '{row.state}' by an agent restart; rolled back to the last active deployment"
        if problems:
            detail += "; " + "; ".join(problems)
        record = db.append_record(
            DeploymentRecord(
                spec_version=row.id,
                services=services,
                proxy_config_version=active.proxy_config_version if active else None,
                result=result,
                detail=detail,
            )
        )
        db.conclude_request(row.id, record.id, detail)
        self.state.incr("rolled_back" if result == RESULT_ROLLED_BACK else "failed")
        db.log_event("WARN", f"Recovery: {detail}", request_id=row.id)
        alert_deployment(result, row.id, detail)
        return record

    def _report_missing(self, active: DeploymentRecord | None) -> None:
        if active is None:
            return
        for s in active.services.values():
            if not self.runtime.inspect(s.container_id).running:
                msg = f"Active container {s.container_name} is not running"
                db.log_event("ERROR", msg, service_name=s.name)
                alert_deployment(RESULT_FAILED, active.spec_version, msg)
