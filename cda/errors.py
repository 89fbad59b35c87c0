from __future__ import annotations


class DeploymentError(Exception):
    """Base class for failures the reconciler knows how to handle."""

    retryable = False


class InvalidSpec(DeploymentError):
    """Malformed deployment request; rejected before queueing."""


class ImageNotFound(DeploymentError):
    retryable = True


class RegistryUnreachable(DeploymentError):
    retryable = True


class RuntimeUnavailable(DeploymentError):
    pass


class PortConflict(DeploymentError):
    pass


class HealthCheckFailed(DeploymentError):
    pass


class ConfigSyntaxError(DeploymentError):
    """Rendered proxy config was rejected; it is never applied."""


class ProxyReloadFailed(DeploymentError):
    """The proxy refused to reload; the previous live config was restored."""


class PersistenceFailure(Exception):
    """State could not be read or written durably.

    Not a DeploymentError: it is never translated into a rollback.
    The worker stops and an operator has to intervene.
    """


class RequestConflict(Exception):
    """The request clashes with one that is queued or in flight."""


class DuplicateRequest(RequestConflict):
    def __init__(self, existing_id: str) -> None:
        super().__init__(f"identical deployment already pending as {existing_id}")
        self.existing_id = existing_id


class ReconcilerUnavailable(Exception):
    pass
