"""Per-cluster network template: ensure and tear down a fixed resource set.

Nothing about the network is stored locally. Each run rediscovers the
resources by tag through a provider-specific driver, so `ensure` and
`ensure_absent` can resume from whatever a crashed or failed run left behind.
"""

from typing import Protocol

from .errors import PartialTeardown, ProviderError
from .types import NetworkKind, NetworkState, NetworkView
from .utils import log

CREATE_ORDER: tuple[NetworkKind, ...] = (
    "network",
    "subnet",
    "gateway",
    "route_table",
    "security_boundary",
)

TEARDOWN_ORDER: tuple[NetworkKind, ...] = (
    "route_table",
    "gateway",
    "security_boundary",
    "subnet",
    "network",
)

VIEW_KEYS: dict[NetworkKind, str] = {
    "network": "network_id",
    "subnet": "subnet_id",
    "gateway": "gateway_id",
    "route_table": "route_table_id",
    "security_boundary": "security_boundary_id",
}


class NetworkDriver(Protocol):
    """Provider side of the template. One instance is bound to one cluster."""

    kinds: tuple[NetworkKind, ...]

    def find(self, kind: NetworkKind) -> str | None:
        """Return the id of the cluster's resource of `kind`, or None.

        Raises AmbiguousTarget when more than one resource matches.
        """
        ...

    def create(self, kind: NetworkKind, view: NetworkView) -> str: ...

    def reconcile(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        """Repair attachments/rules of an existing resource (idempotent)."""
        ...

    def delete(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        """Delete a resource; deleting one that is already gone is a no-op."""
        ...


class NetworkTemplate:
    def __init__(self, driver: NetworkDriver, cluster: str):
        self.driver = driver
        self.cluster = cluster

    def _kinds(self, order: tuple[NetworkKind, ...]) -> list[NetworkKind]:
        return [kind for kind in order if kind in self.driver.kinds]

    def discover(self) -> NetworkView:
        view: NetworkView = {}
        for kind in self._kinds(CREATE_ORDER):
            resource_id = self.driver.find(kind)
            if resource_id:
                view[VIEW_KEYS[kind]] = resource_id
        return view

    def state(self, view: NetworkView) -> NetworkState:
        present = [kind for kind in self.driver.kinds if view.get(VIEW_KEYS[kind])]
        if not present:
            return "absent"
        if len(present) == len(self.driver.kinds):
            return "complete"
        return "partial"

    def ensure(self) -> NetworkView:
        """Create whatever is missing, in dependency order. Safe to repeat."""
        view: NetworkView = {}
        for kind in self._kinds(CREATE_ORDER):
            resource_id = self.driver.find(kind)
            if resource_id:
                log(f"Using existing {kind}: '{resource_id}'")
            else:
                resource_id = self.driver.create(kind, view)
                log(f"Created {kind}: '{resource_id}'")
            view[VIEW_KEYS[kind]] = resource_id
            self.driver.reconcile(kind, resource_id, view)
        return view

    def ensure_absent(self) -> list[NetworkKind]:
        """Delete the cluster's network resources in reverse dependency order.

        :return: kinds actually deleted in this run
        :raises PartialTeardown: when a step fails; earlier steps stay deleted
        """
        view = self.discover()
        if self.state(view) == "absent":
            log(f"No network resources left for cluster '{self.cluster}'")
            return []

        deleted: list[NetworkKind] = []
        for kind in self._kinds(TEARDOWN_ORDER):
            resource_id = view.get(VIEW_KEYS[kind])
            if not resource_id:
                continue
            try:
                self.driver.delete(kind, resource_id, view)
            except ProviderError as e:
                raise PartialTeardown(self.cluster, list(deleted), kind, e.cause) from e
            log(f"Deleted {kind}: '{resource_id}'")
            deleted.append(kind)
        return deleted
