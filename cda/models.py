from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any


RESULT_SUCCESS = "success"
RESULT_ROLLED_BACK = "rolledBack"
RESULT_FAILED = "failed"


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    image_reference: str
    image_digest: str
    container_port: int
    health_check_path: str = "/health"
    proxy_route: str = "/"


@dataclass(frozen=True)
class DeploymentSpec:
    """Desired end state. Immutable once accepted into the queue."""

    spec_version: str
    services: tuple[ServiceSpec, ...]
    prune: bool = False

    def service(self, name: str) -> ServiceSpec | None:
        for s in self.services:
            if s.name == name:
                return s
        return None

    def fingerprint(self) -> str:
        """Identity of the desired state, independent of the tracking id."""
        payload = {
            "prune": self.prune,
            "services": sorted(
                [
                    [s.name, s.image_digest, s.container_port, s.health_check_path, s.proxy_route]
                    for s in self.services
                ]
            ),
        }
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode()).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "spec_version": self.spec_version,
            "prune": self.prune,
            "services": [asdict(s) for s in self.services],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentSpec":
        return cls(
            spec_version=data["spec_version"],
            prune=bool(data.get("prune", False)),
            services=tuple(ServiceSpec(**s) for s in data["services"]),
        )


@dataclass(frozen=True)
class ServiceRecord:
    name: str
    image_digest: str
    container_id: str
    container_name: str
    container_port: int
    health_check_path: str
    proxy_route: str
    status: str  # running|stopped|not_started


@dataclass(frozen=True)
class DeploymentRecord:
    spec_version: str
    services: dict[str, ServiceRecord]
    proxy_config_version: int | None
    result: str  # success|rolledBack|failed
    timestamp: str = ""
    detail: str = ""
    id: int | None = None

    def services_to_json(self) -> str:
        return json.dumps({k: asdict(v) for k, v in sorted(self.services.items())}, sort_keys=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "spec_version": self.spec_version,
            "services": {k: asdict(v) for k, v in sorted(self.services.items())},
            "proxy_config_version": self.proxy_config_version,
            "timestamp": self.timestamp,
            "result": self.result,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ServiceRuntimeState:
    """Live container state. Queried on demand and never persisted."""

    container_id: str
    running: bool
    health_status: str  # healthy|unhealthy|starting|none|missing


@dataclass(frozen=True)
class ProxyRule:
    route_prefix: str
    upstream_target: str


@dataclass(frozen=True)
class ProxyConfig:
    version: int
    rules: tuple[ProxyRule, ...] = field(default_factory=tuple)

    def same_rules(self, other: "ProxyConfig | None") -> bool:
        return other is not None and self.rules == other.rules

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "rules": [asdict(r) for r in self.rules]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProxyConfig":
        return cls(version=int(data["version"]), rules=tuple(ProxyRule(**r) for r in data["rules"]))
