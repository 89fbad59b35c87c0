import hashlib
import os as _os
import sys
from threading import Event

import pytest

# Ensure project root is importable when the package is not installed.
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from cda import db  # noqa: E402
from cda.api_models import DeploymentRequest  # noqa: E402
from cda.docker_ops import ContainerRef, ManagedContainer, repository_of  # noqa: E402
from cda.errors import ImageNotFound  # noqa: E402
from cda.health import HealthResult  # noqa: E402
from cda.intake import Intake  # noqa: E402
from cda.models import ServiceRuntimeState  # noqa: E402
from cda.proxy import ProxyConfigManager  # noqa: E402
from cda.reconciler import Reconciler  # noqa: E402
from cda.runtime import RuntimeState  # noqa: E402
from cda.settings import Settings  # noqa: E402


class FakeRuntime:
    """In-memory stand-in for DockerRuntime."""

    def __init__(self):
        self.containers = {}  # id -> dict
        self.calls = []
        self.pull_failures = {}  # ref -> [exception, ...] raised in order
        self.start_failures = {}  # service -> exception
        self.missing_images = set()
        self._n = 0

    def resolve(self, ref):
        if ref in self.missing_images:
            raise ImageNotFound(f"Image '{ref}' not found.")
        if "@" in ref:
            return ref
        return f"{repository_of(ref)}@sha256:{hashlib.sha256(ref.encode()).hexdigest()}"

    def pull(self, ref):
        self.calls.append(("pull", ref))
        pending = self.pull_failures.get(ref)
        if pending:
            raise pending.pop(0)
        return ref

    def start(self, service_name, digest, config):
        self.calls.append(("start", service_name, digest))
        if service_name in self.start_failures:
            raise self.start_failures[service_name]
        self._n += 1
        cid = f"c{self._n:04d}"
        name = f"cda-{service_name}-{self._n}"
        self.containers[cid] = {
            "name": name,
            "service": service_name,
            "digest": digest,
            "request_id": config.request_id,
            "running": True,
        }
        return ContainerRef(id=cid, name=name)

    def stop(self, container_id):
        self.calls.append(("stop", container_id))
        self.containers.pop(container_id, None)

    def inspect(self, container_id):
        c = self.containers.get(container_id)
        if c is None:
            return ServiceRuntimeState(container_id=container_id, running=False, health_status="missing")
        return ServiceRuntimeState(container_id=container_id, running=c["running"], health_status="none")

    def list_managed(self):
        return [
            ManagedContainer(
                id=cid,
                name=c["name"],
                service=c["service"],
                digest=c["digest"],
                request_id=c["request_id"],
                running=c["running"],
            )
            for cid, c in self.containers.items()
        ]

    def running_ids(self):
        return {cid for cid, c in self.containers.items() if c["running"]}

    def count(self, kind):
        return sum(1 for c in self.calls if c[0] == kind)


class FakeProber:
    def __init__(self):
        self.results = {}  # service -> HealthResult
        self.calls = []

    def __call__(self, service_name, endpoint, timeout_s, backoff):
        self.calls.append((service_name, endpoint))
        result = self.results.get(service_name, HealthResult.HEALTHY)
        return result, f"{service_name}: {result.value}"


class Harness:
    def __init__(self, tmp_path):
        self.runtime = FakeRuntime()
        self.prober = FakeProber()
        self.sleeps = []
        self.state = RuntimeState()
        self.state.set_worker_alive(True)
        self.wake = Event()
        self.proxy = ProxyConfigManager(
            proxy_dir=str(tmp_path / "proxy"), reload_cmd="", test_cmd="", retain=3, listen=80
        )
        self.reconciler = self.make_reconciler()
        self.intake = Intake(self.runtime, self.state, wake=self.wake, max_queue=10)

    def make_reconciler(self, **kw):
        return Reconciler(
            self.runtime,
            self.proxy,
            self.state,
            wake=self.wake,
            prober=self.prober,
            sleep=self.sleeps.append,
            pull_retries=3,
            pull_backoff_s=2.0,
            health_timeout_s=5.0,
            max_parallel=4,
            **kw,
        )

    def submit(self, *services, prune=False):
        payload = {
            "services": [
                {"name": name, "imageReference": image, "containerPort": 8080} for name, image in services
            ],
            "prune": prune,
        }
        return self.intake.submit(DeploymentRequest.model_validate(payload))

    def deploy(self, *services, prune=False):
        row = self.submit(*services, prune=prune)
        record = self.reconciler.run_once()
        assert record is not None and record.spec_version == row.id
        return record

    def live_text(self):
        with open(self.proxy.live_file, encoding="utf-8") as f:
            return f.read()


@pytest.fixture(autouse=True)
def store(tmp_path, monkeypatch):
    """Point the state store at a fresh sqlite file for every test."""
    monkeypatch.setattr(db, "settings", Settings(db_path=str(tmp_path / "state" / "cda.db")))
    db.init_db()


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)
