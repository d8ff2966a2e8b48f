"""Type definitions for vmcli."""

from typing import Literal, TypedDict

ProviderName = Literal["aws", "lightsail", "gcp", "do"]
RunState = Literal["pending", "running", "stopping", "stopped", "terminated", "unknown"]
StatusChecks = Literal["passed", "failed", "unknown"]
Reachability = Literal["reachable", "unreachable", "unknown"]
KeyProbe = Literal["ok", "denied", "unsupported", "unknown"]
Diagnosis = Literal["healthy", "degraded", "unreachable"]
NetworkKind = Literal["network", "subnet", "gateway", "route_table", "security_boundary"]
NetworkState = Literal["absent", "partial", "complete"]

PROVIDER_NAMES: tuple[ProviderName, ...] = ("aws", "lightsail", "gcp", "do")


class InstanceView(TypedDict, total=False):
    """Normalized live instance state, rebuilt from provider tags on every call."""

    id: str
    name: str
    cluster: str
    run_state: RunState
    public_address: str | None
    status_checks: StatusChecks
    key_reference: str
    zone: str  # availability zone / GCE zone / DO region slug
    size: str  # instance type, bundle, machine type or droplet size


class NetworkView(TypedDict, total=False):
    """Network resources found for one cluster, keyed by kind."""

    network_id: str
    subnet_id: str
    gateway_id: str
    route_table_id: str
    security_boundary_id: str


class HealthReport(TypedDict):
    """Result of one health probe. Never persisted."""

    cluster: str
    name: str
    instance_id: str
    run_state: RunState
    status_checks: StatusChecks
    network_reachability: Reachability
    key_injection_probe: KeyProbe
    diagnosis: Diagnosis
    notes: list[str]


class StatusResult(TypedDict):
    """Instances plus network view reported by `status`."""

    instances: list[InstanceView]
    network: NetworkView


class PruneResult(TypedDict, total=False):
    """Outcome of a `prune` run."""

    cluster: str
    network: NetworkView
    deleted: list[NetworkKind]
    key_deleted: bool
    config_removed: bool
    aborted: bool
