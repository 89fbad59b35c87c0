import subprocess

import pytest

from cda import db
from cda import reconciler as reconciler_mod
from cda.api_models import DeploymentRequest
from cda.errors import PersistenceFailure, PortConflict, RegistryUnreachable
from cda.health import HealthResult
from cda.models import RESULT_FAILED, RESULT_ROLLED_BACK, RESULT_SUCCESS


def test_first_deployment_becomes_active(harness):
    record = harness.deploy(("backend", "registry.local/backend:1"))

    assert record.result == RESULT_SUCCESS
    assert db.get_active().id == record.id
    svc = record.services["backend"]
    assert svc.status == "running"
    assert harness.runtime.running_ids() == {svc.container_id}
    assert harness.proxy.current_version() == record.proxy_config_version
    live = harness.live_text()
    assert "location /backend/ {" in live
    assert f"proxy_pass http://{svc.container_name}:8080;" in live
    assert db.get_request(record.spec_version).state == "done"


def test_new_digest_replaces_old_container(harness):
    first = harness.deploy(("service-a", "registry.local/a:w"))
    old = first.services["service-a"]
    records_before = len(db.list_records())

    second = harness.deploy(("service-a", "registry.local/a:x"))

    active = db.get_active()
    assert active.id == second.id
    assert active.services["service-a"].image_digest == harness.runtime.resolve("registry.local/a:x")
    assert old.container_id not in harness.runtime.containers
    assert harness.runtime.running_ids() == {active.services["service-a"].container_id}
    assert len(db.list_records()) == records_before + 1
    assert second.result == RESULT_SUCCESS
    assert old.container_name not in harness.live_text()


def test_identical_spec_changes_nothing(harness):
    first = harness.deploy(("backend", "registry.local/backend:1"))
    calls_before = list(harness.runtime.calls)
    live_before = harness.live_text()
    version_before = harness.proxy.current_version()

    second = harness.deploy(("backend", "registry.local/backend:1"))

    assert second.result == RESULT_SUCCESS
    assert harness.runtime.calls == calls_before
    assert harness.live_text() == live_before
    assert harness.proxy.current_version() == version_before
    assert second.services == first.services
    assert second.proxy_config_version == first.proxy_config_version


def test_unlisted_services_are_kept_untouched(harness):
    first = harness.deploy(("frontend", "registry.local/web:1"), ("backend", "registry.local/api:1"))
    frontend = first.services["frontend"]

    second = harness.deploy(("backend", "registry.local/api:2"))

    assert second.services["frontend"] == frontend
    assert frontend.container_id in harness.runtime.running_ids()
    assert ("stop", frontend.container_id) not in harness.runtime.calls
    starts = [c[1] for c in harness.runtime.calls if c[0] == "start"]
    assert sorted(starts) == ["backend", "backend", "frontend"]
    assert starts[-1] == "backend"


def test_prune_removes_unlisted_services(harness):
    first = harness.deploy(("frontend", "registry.local/web:1"), ("backend", "registry.local/api:1"))

    second = harness.deploy(("backend", "registry.local/api:1"), prune=True)

    assert set(second.services) == {"backend"}
    assert first.services["frontend"].container_id not in harness.runtime.containers
    assert "/frontend/" not in harness.live_text()
    assert second.services["backend"] == first.services["backend"]


def test_route_change_only_touches_proxy(harness):
    first = harness.deploy(("backend", "registry.local/api:1"))
    payload = {
        "services": [
            {"name": "backend", "imageReference": "registry.local/api:1", "containerPort": 8080, "proxyRoute": "/api/"}
        ]
    }
    harness.intake.submit(DeploymentRequest.model_validate(payload))
    second = harness.reconciler.run_once()

    assert second.result == RESULT_SUCCESS
    assert harness.runtime.count("start") == 1
    assert second.services["backend"].container_id == first.services["backend"].container_id
    assert second.proxy_config_version == first.proxy_config_version + 1
    assert "location /api/ {" in harness.live_text()


def test_unhealthy_service_rolls_back_everything(harness):
    first = harness.deploy(("frontend", "registry.local/web:1"), ("backend", "registry.local/api:1"))
    running_before = harness.runtime.running_ids()
    live_before = harness.live_text()
    harness.prober.results["backend"] = HealthResult.UNHEALTHY

    record = harness.deploy(("frontend", "registry.local/web:2"), ("backend", "registry.local/api:2"))

    assert record.result == RESULT_ROLLED_BACK
    assert "HealthCheckFailed" in record.detail
    assert harness.runtime.running_ids() == running_before
    assert harness.live_text() == live_before
    assert db.get_active().id == first.id
    assert {s.status for s in record.services.values()} == {"stopped"}
    assert record.proxy_config_version == first.proxy_config_version


def test_pull_retries_with_linear_backoff_then_rolls_back(harness):
    harness.deploy(("backend", "registry.local/api:1"))
    digest = harness.runtime.resolve("registry.local/api:2")
    harness.runtime.pull_failures[digest] = [RegistryUnreachable("registry down") for _ in range(4)]
    starts_before = harness.runtime.count("start")

    record = harness.deploy(("backend", "registry.local/api:2"))

    assert record.result == RESULT_ROLLED_BACK
    assert harness.sleeps == [2.0, 4.0, 6.0]
    assert harness.runtime.count("start") == starts_before
    assert record.services["backend"].status == "not_started"


def test_pull_succeeds_after_transient_failures(harness):
    digest = harness.runtime.resolve("registry.local/api:1")
    harness.runtime.pull_failures[digest] = [RegistryUnreachable("blip"), RegistryUnreachable("blip")]

    record = harness.deploy(("backend", "registry.local/api:1"))

    assert record.result == RESULT_SUCCESS
    assert harness.sleeps == [2.0, 4.0]


def test_start_failure_stops_started_siblings(harness):
    harness.runtime.start_failures["backend"] = PortConflict("port is already allocated")

    record = harness.deploy(("frontend", "registry.local/web:1"), ("backend", "registry.local/api:1"))

    assert record.result == RESULT_ROLLED_BACK
    assert "PortConflict" in record.detail
    assert harness.runtime.running_ids() == set()
    assert db.get_active() is None
    assert harness.proxy.current_version() is None
    assert harness.prober.calls == []


def test_rejected_proxy_config_is_never_applied(harness):
    first = harness.deploy(("backend", "registry.local/api:1"))

    def runner(cmd, timeout):
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="unexpected '}'")

    harness.proxy.test_cmd = "nginx -t -c {path}"
    harness.proxy._run = runner
    record = harness.deploy(("backend", "registry.local/api:2"))

    assert record.result == RESULT_ROLLED_BACK
    assert "ConfigSyntaxError" in record.detail
    assert harness.proxy.current_version() == first.proxy_config_version
    assert harness.runtime.running_ids() == {first.services["backend"].container_id}


def test_failed_reload_restores_previous_config(harness):
    first = harness.deploy(("backend", "registry.local/api:1"))
    live_before = harness.live_text()
    calls = []

    def runner(cmd, timeout):
        calls.append(cmd)
        # First reload (new config) fails, the reload of the restored config works.
        rc = 1 if len(calls) == 1 else 0
        return subprocess.CompletedProcess(cmd, rc, stdout="", stderr="emerg")

    harness.proxy.reload_cmd = "nginx -s reload"
    harness.proxy._run = runner
    record = harness.deploy(("backend", "registry.local/api:2"))

    assert record.result == RESULT_ROLLED_BACK
    assert "ProxyReloadFailed" in record.detail
    assert harness.live_text() == live_before
    assert db.get_active().id == first.id


def test_blue_green_order(harness):
    first = harness.deploy(("backend", "registry.local/api:1"))
    old_id = first.services["backend"].container_id
    events = harness.runtime.calls
    real_apply = harness.proxy.apply

    def apply(config):
        # The old container must still be serving while the proxy switches.
        assert old_id in harness.runtime.running_ids()
        assert len(harness.runtime.running_ids()) == 2
        events.append(("apply", config.version))
        return real_apply(config)

    harness.proxy.apply = apply
    harness.deploy(("backend", "registry.local/api:2"))

    kinds = [e[0] for e in events[events.index(("stop", old_id)) - 2:]]
    assert kinds == ["start", "apply", "stop"]
    assert [name for name, _ in harness.prober.calls] == ["backend", "backend"]


def test_health_probe_targets_new_container(harness):
    record = harness.deploy(("backend", "registry.local/api:1"))
    name = record.services["backend"].container_name
    assert harness.prober.calls == [("backend", f"http://{name}:8080/health")]


def test_fifo_order(harness):
    a = harness.submit(("backend", "registry.local/api:1"))
    b = harness.submit(("backend", "registry.local/api:2"))

    first = harness.reconciler.run_once()
    second = harness.reconciler.run_once()

    assert (first.spec_version, second.spec_version) == (a.id, b.id)
    assert harness.reconciler.run_once() is None
    assert db.get_active().id == second.id


def test_crash_after_proxy_switch_rolls_back_on_restart(harness, monkeypatch):
    first = harness.deploy(("backend", "registry.local/api:1"))
    old = first.services["backend"]
    row = harness.submit(("backend", "registry.local/api:2"))
    real_commit = db.commit_active

    def crash(record, expected):
        raise PersistenceFailure("disk full")

    monkeypatch.setattr(db, "commit_active", crash)
    with pytest.raises(PersistenceFailure):
        harness.reconciler.run_once()
    monkeypatch.setattr(db, "commit_active", real_commit)

    assert harness.proxy.current_version() == first.proxy_config_version + 1
    assert len(harness.runtime.running_ids()) == 2
    assert db.get_request(row.id).state == "finalizing"

    records = harness.make_reconciler().recover()

    assert harness.proxy.current_version() == first.proxy_config_version
    assert harness.runtime.running_ids() == {old.container_id}
    assert old.container_name in harness.live_text()
    assert db.get_active().id == first.id
    assert [r.result for r in records] == [RESULT_ROLLED_BACK]
    concluded = db.get_request(row.id)
    assert concluded.state == "done"
    assert db.get_record(concluded.record_id).result == RESULT_ROLLED_BACK


def test_crash_after_commit_completes_on_restart(harness, monkeypatch):
    first = harness.deploy(("backend", "registry.local/api:1"))
    old = first.services["backend"]
    row = harness.submit(("backend", "registry.local/api:2"))
    real_conclude = db.conclude_request

    def crash(request_id, record_id, detail=""):
        raise PersistenceFailure("lost the disk")

    monkeypatch.setattr(db, "conclude_request", crash)
    with pytest.raises(PersistenceFailure):
        harness.reconciler.run_once()
    monkeypatch.setattr(db, "conclude_request", real_conclude)

    records = harness.make_reconciler().recover()

    active = db.get_active()
    assert active.spec_version == row.id
    assert records == [active]
    assert harness.runtime.running_ids() == {active.services["backend"].container_id}
    assert old.container_id not in harness.runtime.containers
    assert db.get_request(row.id).state == "done"
    assert db.get_request(row.id).record_id == active.id


def test_crash_during_first_deployment_clears_routes(harness, monkeypatch):
    row = harness.submit(("backend", "registry.local/api:1"))
    real_commit = db.commit_active

    def crash(record, expected):
        raise PersistenceFailure("boom")

    monkeypatch.setattr(db, "commit_active", crash)
    with pytest.raises(PersistenceFailure):
        harness.reconciler.run_once()
    monkeypatch.setattr(db, "commit_active", real_commit)

    records = harness.make_reconciler().recover()

    assert harness.runtime.running_ids() == set()
    assert harness.proxy.active_config().rules == ()
    assert "return 503;" in harness.live_text()
    assert db.get_active() is None
    assert [r.result for r in records] == [RESULT_ROLLED_BACK]
    assert records[0].services["backend"].status == "stopped"
    assert db.get_request(row.id).state == "done"


def test_recover_is_quiet_when_state_agrees(harness):
    harness.deploy(("backend", "registry.local/api:1"))
    calls = list(harness.runtime.calls)

    assert harness.make_reconciler().recover() == []
    assert harness.runtime.calls == calls


def test_persistence_failure_stops_worker(harness, monkeypatch):
    def broken():
        raise PersistenceFailure("database is locked")

    monkeypatch.setattr(db, "claim_next_request", broken)
    harness.reconciler.start()
    harness.reconciler._thr.join(timeout=5)

    assert not harness.reconciler._thr.is_alive()
    assert "database is locked" in harness.state.fatal_error
    assert not harness.state.accepting()


def test_stop_error_after_commit_keeps_new_deployment(harness, monkeypatch):
    first = harness.deploy(("service-a", "registry.local/a:1"))
    old_id = first.services["service-a"].container_id
    real_stop = harness.runtime.stop

    def stop(container_id):
        if container_id == old_id:
            raise RuntimeError("engine hung up")
        real_stop(container_id)

    monkeypatch.setattr(harness.runtime, "stop", stop)

    second = harness.deploy(("service-a", "registry.local/a:2"))

    assert second.result == RESULT_SUCCESS
    assert db.get_active().id == second.id
    new_id = second.services["service-a"].container_id
    assert new_id in harness.runtime.running_ids()
    assert second.services["service-a"].container_name in harness.live_text()
    assert db.get_request(second.spec_version).state == "done"
    assert harness.state.phase == "idle"
    warnings = [e["message"] for e in db.latest_events() if e["level"] == "WARN"]
    assert any("Could not stop old container" in m and "RuntimeError" in m for m in warnings)


def test_rollback_concludes_even_when_compensation_raises(harness, monkeypatch):
    first = harness.deploy(("backend", "registry.local/api:1"))
    harness.prober.results["backend"] = HealthResult.UNHEALTHY
    real_stop = harness.runtime.stop

    def stop(container_id):
        if container_id != first.services["backend"].container_id:
            raise RuntimeError("engine hung up")
        real_stop(container_id)

    monkeypatch.setattr(harness.runtime, "stop", stop)

    record = harness.deploy(("backend", "registry.local/api:2"))

    assert record.result == RESULT_FAILED
    assert "could not stop" in record.detail
    assert db.get_active().id == first.id
    assert db.get_request(record.spec_version).state == "done"
    assert harness.state.phase == "idle"


def test_dead_container_with_same_digest_is_restarted(harness):
    first = harness.deploy(("backend", "registry.local/api:1"))
    dead = first.services["backend"]
    harness.runtime.containers[dead.container_id]["running"] = False

    second = harness.deploy(("backend", "registry.local/api:1"))

    fresh = second.services["backend"]
    assert second.result == RESULT_SUCCESS
    assert fresh.image_digest == dead.image_digest
    assert fresh.container_id != dead.container_id
    assert harness.runtime.count("start") == 2
    assert harness.runtime.running_ids() == {fresh.container_id}
    assert ("stop", dead.container_id) in harness.runtime.calls


def test_recover_reports_dead_active_container(harness, monkeypatch):
    first = harness.deploy(("backend", "registry.local/api:1"))
    dead = first.services["backend"]
    harness.runtime.containers[dead.container_id]["running"] = False
    alerts = []
    monkeypatch.setattr(reconciler_mod, "alert_deployment", lambda *args: alerts.append(args))

    assert harness.make_reconciler().recover() == []

    errors = [e for e in db.latest_events() if e["level"] == "ERROR"]
    assert any(dead.container_name in e["message"] and e["service_name"] == "backend" for e in errors)
    assert len(alerts) == 1
    assert alerts[0][:2] == (RESULT_FAILED, first.spec_version)
    # Reported, not restarted.
    assert harness.runtime.count("start") == 1


def test_route_taken_by_carried_over_service_is_rejected_before_pull(harness):
    def submit(name, image, route):
        payload = {"services": [{"name": name, "imageReference": image, "proxyRoute": route}]}
        return harness.intake.submit(DeploymentRequest.model_validate(payload))

    submit("frontend", "registry.local/web:1", "/app/")
    first = harness.reconciler.run_once()
    pulls_before = harness.runtime.count("pull")
    live_before = harness.live_text()

    submit("backend", "registry.local/api:1", "/app/")
    record = harness.reconciler.run_once()

    assert record.result == RESULT_ROLLED_BACK
    assert "already served by 'frontend'" in record.detail
    assert harness.runtime.count("pull") == pulls_before
    assert harness.runtime.count("start") == 1
    assert harness.live_text() == live_before
    assert db.get_active().id == first.id


def test_health_failure_detail_names_each_service(harness):
    harness.prober.results["frontend"] = HealthResult.TIMED_OUT
    harness.prober.results["backend"] = HealthResult.UNHEALTHY

    record = harness.deploy(("frontend", "registry.local/web:1"), ("backend", "registry.local/api:1"))

    assert record.result == RESULT_ROLLED_BACK
    assert "backend: unhealthy" in record.detail
    assert "frontend: timedOut" in record.detail
