from __future__ import annotations
from typing import Any, Dict, Optional


class ProvisioningError(Exception):
    """Base class for everything the provisioner raises on purpose."""


class ValidationError(ProvisioningError):
    def __init__(self, kind: str, resource_name: str, detail: str):
        self.kind = kind
        self.resource_name = resource_name
        self.detail = detail
        super().__init__(f"invalid {kind} '{resource_name}': {detail}")


class ConnectivityError(ProvisioningError):
    """Broker unreachable or answering 5xx after all retries."""


class BrokerRequestError(ProvisioningError):
    """Permanent (4xx) answer from the management API. Never retried."""

    def __init__(self, status: int, url: str, body: str = ""):
        self.status = status
        self.url = url
        self.body = body
        super().__init__(f"HTTP {status} from {url}: {body}")


class ConflictError(ProvisioningError):
    def __init__(self, resource_name: str, expected: Dict[str, Any], actual: Dict[str, Any]):
        self.resource_name = resource_name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"'{resource_name}' already exists with a different definition "
            f"(expected {expected}, found {actual})"
        )


class DependencyError(ProvisioningError):
    def __init__(self, ref: Any, dependency: Any, reason: Optional[str] = None):
        self.ref = ref
        self.dependency = dependency
        msg = f"not attempted: dependency {dependency} was not applied"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class ReadinessTimeoutError(ProvisioningError, TimeoutError):
    def __init__(self, timeout: float, attempts: int):
        self.timeout = timeout
        self.attempts = attempts
        super().__init__(f"broker not ready after {timeout:.1f}s ({attempts} probe(s))")


class ProvisioningCancelled(ProvisioningError):
    """The caller aborted the run before any resource was touched."""
