# common/__init__.py
from .applier import ApplyReport, ResourceState, TopologyApplier
from .config import Settings
from .errors import (
    BrokerRequestError,
    ConflictError,
    ConnectivityError,
    DependencyError,
    ProvisioningCancelled,
    ProvisioningError,
    ReadinessTimeoutError,
    ValidationError,
)
from .logging_conf import setup_logging
from .management import ManagementClient
from .platform import default_topology
from .readiness import ReadinessPoller
from .resources import (
    Binding,
    DeadLetter,
    Exchange,
    Permission,
    Policy,
    Queue,
    ResourceRef,
    Topology,
    VirtualHost,
    load_topology,
)
from .validation import validate_topology

__all__ = [
    "ApplyReport",
    "ResourceState",
    "TopologyApplier",
    "Settings",
    "BrokerRequestError",
    "ConflictError",
    "ConnectivityError",
    "DependencyError",
    "ProvisioningCancelled",
    "ProvisioningError",
    "ReadinessTimeoutError",
    "ValidationError",
    "setup_logging",
    "ManagementClient",
    "default_topology",
    "ReadinessPoller",
    "Binding",
    "DeadLetter",
    "Exchange",
    "Permission",
    "Policy",
    "Queue",
    "ResourceRef",
    "Topology",
    "VirtualHost",
    "load_topology",
    "validate_topology",
]
