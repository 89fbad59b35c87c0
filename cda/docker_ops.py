from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.errors import ImageNotFound as DockerImageNotFound
from requests.exceptions import RequestException

from .errors import ImageNotFound, PortConflict, RegistryUnreachable, RuntimeUnavailable
from .models import ServiceRuntimeState
from .settings import settings


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
# Simplified docker reference grammar: [registry[:port]/]path[:tag][@sha256:digest]
IMAGE_REF_RE = re.compile(
    r"^(?:(?P<registry>[a-zA-Z0-9][a-zA-Z0-9.\-]*(?::[0-9]+)?)/)?"
    r"(?P<path>[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*)"
    r"(?::(?P<tag>[\w][\w.\-]{0,127}))?"
    r"(?:@(?P<digest>sha256:[a-f0-9]{64}))?$"
)
LOCAL_IMAGE_ID_RE = re.compile(r"^sha256:[a-f0-9]{64}$")

LABEL_MANAGED = "cda.managed"
LABEL_SERVICE = "cda.service"
LABEL_DIGEST = "cda.digest"
LABEL_REQUEST = "cda.request"

_PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use")
_NOT_FOUND_MARKERS = ("manifest unknown", "not found", "does not exist", "pull access denied")


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name or ""):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_image_reference(ref: str) -> None:
    if not ref or len(ref) > 255:
        raise ValueError("Image reference must be 1..255 characters.")
    if LOCAL_IMAGE_ID_RE.match(ref):
        return
    if not IMAGE_REF_RE.match(ref):
        raise ValueError(f"Invalid image reference '{ref}'.")


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes only ever hit the container itself.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")


def repository_of(ref: str) -> str:
    """Strip tag and digest from an image reference."""
    m = IMAGE_REF_RE.match(ref)
    if not m:
        return ref
    registry = m.group("registry")
    return f"{registry}/{m.group('path')}" if registry else m.group("path")


def pinned_reference(ref: str, digest: str) -> str:
    return f"{repository_of(ref)}@{digest}"


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


@dataclass(frozen=True)
class ManagedContainer:
    id: str
    name: str
    service: str
    digest: str
    request_id: str
    running: bool


@dataclass(frozen=True)
class StartConfig:
    container_port: int
    request_id: str = ""
    env: dict[str, str] = field(default_factory=dict)
    command: list[str] | None = None


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


def _looks_not_found(e: APIError) -> bool:
    if getattr(e, "status_code", None) == 404:
        return True
    text = str(getattr(e, "explanation", "") or e).lower()
    return any(m in text for m in _NOT_FOUND_MARKERS)


class DockerRuntime:
    """Thin adapter over the local docker engine.

    Every call is synchronous. Docker SDK errors are translated into the
    agent's own error types so callers never import docker.
    """

    def __init__(self, client_factory: Callable[[], Any] | None = None) -> None:
        self._client_factory = client_factory or (lambda: docker.from_env(timeout=settings.runtime_timeout_s))
        self._client_obj: Any = None

    def _client(self) -> Any:
        if self._client_obj is None:
            try:
                self._client_obj = self._client_factory()
            except DockerException as e:
                raise RuntimeUnavailable(f"Docker is not available: {e}") from e
        return self._client_obj

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except (DockerException, RequestException, RuntimeUnavailable):
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(settings.docker_network)
        except NotFound:
            c.networks.create(settings.docker_network, driver="bridge")
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Cannot prepare network '{settings.docker_network}': {e}") from e

    def resolve(self, ref: str) -> str:
        """Resolve a (possibly mutable) reference to an immutable one without pulling.

        Returns `repo@sha256:...` from the registry, or for images that only
        exist locally, their repo digest or image id.
        """
        validate_image_reference(ref)
        if LOCAL_IMAGE_ID_RE.match(ref):
            return self._local_digest(ref)
        if "@" in ref:
            return pinned_reference(ref, ref.split("@", 1)[1])

        c = self._client()
        try:
            data = c.images.get_registry_data(ref)
            return pinned_reference(ref, data.id)
        except NotFound:
            return self._local_digest(ref)
        except APIError as e:
            if _looks_not_found(e):
                return self._local_digest(ref)
            raise RegistryUnreachable(f"Registry lookup for '{ref}' failed: {e}") from e
        except (DockerException, RequestException) as e:
            raise RegistryUnreachable(f"Registry lookup for '{ref}' failed: {e}") from e

    def _local_digest(self, ref: str) -> str:
        c = self._client()
        try:
            image = c.images.get(ref)
        except (DockerImageNotFound, NotFound) as e:
            raise ImageNotFound(f"Image '{ref}' not found in registry or locally.") from e
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Cannot inspect image '{ref}': {e}") from e

        repo = repository_of(ref)
        for rd in image.attrs.get("RepoDigests") or []:
            if rd.split("@", 1)[0] == repo:
                return rd
        return image.id

    def pull(self, ref: str) -> str:
        """Make the image available locally; returns the digest reference."""
        c = self._client()
        if LOCAL_IMAGE_ID_RE.match(ref):
            return self._local_digest(ref)
        try:
            c.images.pull(ref)
        except (DockerImageNotFound, NotFound) as e:
            raise ImageNotFound(f"Image '{ref}' not found.") from e
        except APIError as e:
            if _looks_not_found(e):
                raise ImageNotFound(f"Image '{ref}' not found: {e}") from e
            raise RegistryUnreachable(f"Pull of '{ref}' failed: {e}") from e
        except (DockerException, RequestException) as e:
            raise RegistryUnreachable(f"Pull of '{ref}' failed: {e}") from e
        return ref if "@" in ref else self._local_digest(ref)

    def start(self, service_name: str, digest: str, config: StartConfig) -> ContainerRef:
        """Create and start a container attached to the agent network.

        Containers are labelled so they can be rediscovered after restarts.
        """
        validate_service_name(service_name)
        self.ensure_network()

        name = f"cda-{service_name}-{secrets.token_hex(3)}"
        labels: dict[str, str] = {
            LABEL_MANAGED: "true",
            LABEL_SERVICE: service_name,
            LABEL_DIGEST: digest,
            LABEL_REQUEST: config.request_id,
        }
        c = self._client()
        try:
            container = c.containers.run(
                digest,
                command=config.command,
                detach=True,
                name=name,
                environment=config.env or {},
                network=settings.docker_network,
                labels=labels,
                restart_policy={"Name": settings.restart_policy},
            )
        except APIError as e:
            text = str(getattr(e, "explanation", "") or e).lower()
            if any(m in text for m in _PORT_CONFLICT_MARKERS):
                raise PortConflict(f"Cannot start {name}: {e}") from e
            raise RuntimeUnavailable(f"Cannot start {name}: {e}") from e
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Cannot start {name}: {e}") from e
        return ContainerRef(id=container.id, name=name)

    def stop(self, container_id: str) -> None:
        """Stop and remove a container. Missing containers are not an error."""
        c = self._client()
        try:
            cont = c.containers.get(container_id)
            cont.stop(timeout=settings.stop_timeout_s)
            cont.remove(force=True)
        except NotFound:
            return
        except APIError as e:
            # 409: removal already in progress
            if getattr(e, "status_code", None) == 409:
                return
            raise RuntimeUnavailable(f"Cannot stop {container_id}: {e}") from e
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Cannot stop {container_id}: {e}") from e

    def inspect(self, container_id: str) -> ServiceRuntimeState:
        c = self._client()
        try:
            cont = c.containers.get(container_id)
            cont.reload()
        except NotFound:
            return ServiceRuntimeState(container_id=container_id, running=False, health_status="missing")
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Cannot inspect {container_id}: {e}") from e
        health = ((cont.attrs.get("State") or {}).get("Health") or {}).get("Status", "none")
        return ServiceRuntimeState(container_id=cont.id, running=cont.status == "running", health_status=health)

    def list_managed(self) -> list[ManagedContainer]:
        c = self._client()
        try:
            containers = c.containers.list(all=True, filters={"label": f"{LABEL_MANAGED}=true"})
        except (DockerException, RequestException) as e:
            raise RuntimeUnavailable(f"Cannot list containers: {e}") from e
        out: list[ManagedContainer] = []
        for x in containers:
            labels = x.labels or {}
            out.append(
                ManagedContainer(
                    id=x.id,
                    name=x.name,
                    service=labels.get(LABEL_SERVICE, ""),
                    digest=labels.get(LABEL_DIGEST, ""),
                    request_id=labels.get(LABEL_REQUEST, ""),
                    running=x.status == "running",
                )
            )
        return out
