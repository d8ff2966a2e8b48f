"""Google Compute Engine backend.

The cluster gets a custom-mode VPC network, one regional subnetwork, an SSH
firewall rule and a default route to the internet gateway. GCE has no
internet-gateway resource to manage. Networks, firewalls and routes do not
take labels, so they are found by their deterministic `<cluster>-*` names.
Instances carry labels.
"""

from contextlib import contextmanager

import google.auth
from google.api_core.exceptions import (
    DeadlineExceeded,
    GoogleAPICallError,
    NotFound,
    ResourceExhausted,
    RetryError,
    ServiceUnavailable,
    TooManyRequests,
)
from google.auth.exceptions import DefaultCredentialsError
from google.cloud import compute_v1

from .config import EffectiveConfig
from .errors import ProviderError, ProviderThrottled, ProviderUnavailable
from .network import NetworkDriver
from .providers import WORLD_CIDRS, BaseProvider, cidr_covers, ingress_reachability
from .tags import (
    GCP_CLUSTER_LABEL,
    GCP_NAME_LABEL,
    gcp_label_filter,
    gcp_label_value,
    gcp_labels,
    resource_name,
)
from .types import (
    InstanceView,
    KeyProbe,
    NetworkKind,
    NetworkView,
    ProviderName,
    Reachability,
    RunState,
    StatusChecks,
)
from .utils import log, with_retries

SUBNET_CIDR = "10.0.1.0/24"
INGRESS_PORTS = ["22", "80", "443"]
SET_METADATA_PERMISSION = "compute.instances.setMetadata"

NAME_SUFFIXES: dict[NetworkKind, str] = {
    "network": "net",
    "subnet": "subnet",
    "route_table": "rt",
    "security_boundary": "fw-ssh",
}

RUN_STATES: dict[str, RunState] = {
    "PROVISIONING": "pending",
    "STAGING": "pending",
    "RUNNING": "running",
    "STOPPING": "stopping",
    "SUSPENDING": "stopping",
    "REPAIRING": "pending",
    # GCE reports a stopped VM as TERMINATED; deleted VMs simply disappear.
    "TERMINATED": "stopped",
    "STOPPED": "stopped",
    "SUSPENDED": "stopped",
}


@contextmanager
def gcp_call(operation: str, target: str):
    """Translate google-api-core failures into ProviderError subclasses."""
    try:
        yield
    except (TooManyRequests, ResourceExhausted) as e:
        raise ProviderThrottled(operation, target, e.message or str(e)) from e
    except (ServiceUnavailable, DeadlineExceeded) as e:
        raise ProviderUnavailable(operation, target, e.message or str(e)) from e
    except RetryError as e:
        raise ProviderUnavailable(operation, target, str(e)) from e
    except GoogleAPICallError as e:
        raise ProviderError(operation, target, e.message or str(e)) from e
    except DefaultCredentialsError as e:
        raise ProviderError(operation, target, f"no application-default credentials: {e}") from e


def call(operation: str, target: str, fn, *, missing_ok: bool = False, wait: bool = False, **kwargs):
    """Run one Compute API call with throttle retries.

    :param missing_ok: return None instead of raising on NotFound
    :param wait: block on the returned extended operation
    """

    def attempt():
        with gcp_call(operation, target):
            try:
                result = fn(**kwargs)
                if wait:
                    result.result()
                return result
            except NotFound:
                if missing_ok:
                    return None
                raise

    return with_retries(attempt)


def basename(url: str) -> str:
    return url.rsplit("/", 1)[-1] if url else ""


def gce_name(*parts: str) -> str:
    """A valid GCE resource name: lowercase, [a-z0-9-], starts with a letter, <=63."""
    name = gcp_label_value("-".join(parts)).strip("-")
    if not name or not name[0].isalpha():
        name = f"vm-{name}"
    return name[:63].rstrip("-")


def port_spec_covers(ports: list[str], port: int) -> bool:
    """Whether a firewall `ports` list (empty means all) covers `port`."""
    if not ports:
        return True
    for spec in ports:
        low, _, high = spec.partition("-")
        if int(low) <= port <= int(high or low):
            return True
    return False


def network_url(project: str, network: str) -> str:
    return f"projects/{project}/global/networks/{network}"


def firewall_tag(cluster: str) -> str:
    """Network tag that the cluster firewall rule targets."""
    return gce_name(resource_name(cluster, NAME_SUFFIXES["security_boundary"]))


def allows_ssh(firewall) -> bool:
    return any(
        a.I_p_protocol in ("tcp", "all") and port_spec_covers(list(a.ports), 22)
        for a in firewall.allowed
    )


def denies_ssh(firewall, caller_ip: str | None) -> bool:
    """Whether a deny rule blocks TCP/22 from the caller (or from everywhere)."""
    if not any(
        d.I_p_protocol in ("tcp", "all") and port_spec_covers(list(d.ports), 22)
        for d in firewall.denied
    ):
        return False
    ranges = list(firewall.source_ranges)
    if any(r in WORLD_CIDRS for r in ranges):
        return True
    return caller_ip is not None and any(cidr_covers(r, caller_ip) for r in ranges)


class GCPNetworkDriver:
    kinds: tuple[NetworkKind, ...] = ("network", "subnet", "route_table", "security_boundary")

    def __init__(self, project: str, region: str, cluster: str, clients: dict | None = None):
        self.project = project
        self.region = region
        self.cluster = cluster
        self.clients = clients or {
            "network": compute_v1.NetworksClient(),
            "subnet": compute_v1.SubnetworksClient(),
            "route_table": compute_v1.RoutesClient(),
            "security_boundary": compute_v1.FirewallsClient(),
        }

    def name(self, kind: NetworkKind) -> str:
        return gce_name(resource_name(self.cluster, NAME_SUFFIXES[kind]))

    def network_url(self, network: str) -> str:
        return network_url(self.project, network)

    def firewall_tag(self) -> str:
        return firewall_tag(self.cluster)

    def _scope(self, kind: NetworkKind) -> dict:
        if kind == "subnet":
            return {"project": self.project, "region": self.region}
        return {"project": self.project}

    def _id_arg(self, kind: NetworkKind) -> str:
        return {
            "network": "network",
            "subnet": "subnetwork",
            "route_table": "route",
            "security_boundary": "firewall",
        }[kind]

    def get(self, kind: NetworkKind, resource_id: str):
        return call(
            f"get {kind}",
            resource_id,
            self.clients[kind].get,
            missing_ok=True,
            **self._scope(kind),
            **{self._id_arg(kind): resource_id},
        )

    def find(self, kind: NetworkKind) -> str | None:
        name = self.name(kind)
        return name if self.get(kind, name) is not None else None

    def create(self, kind: NetworkKind, view: NetworkView) -> str:
        name = self.name(kind)
        description = f"vmcli cluster {self.cluster}"
        if kind == "network":
            body = {
                "network_resource": compute_v1.Network(
                    name=name, auto_create_subnetworks=False, description=description
                )
            }
        elif kind == "subnet":
            body = {
                "subnetwork_resource": compute_v1.Subnetwork(
                    name=name,
                    ip_cidr_range=SUBNET_CIDR,
                    network=self.network_url(view["network_id"]),
                    description=description,
                )
            }
        elif kind == "route_table":
            body = {
                "route_resource": compute_v1.Route(
                    name=name,
                    dest_range="0.0.0.0/0",
                    network=self.network_url(view["network_id"]),
                    next_hop_gateway=(
                        f"projects/{self.project}/global/gateways/default-internet-gateway"
                    ),
                    priority=1000,
                    description=description,
                )
            }
        else:
            body = {
                "firewall_resource": compute_v1.Firewall(
                    name=name,
                    network=self.network_url(view["network_id"]),
                    direction="INGRESS",
                    allowed=[compute_v1.Allowed(I_p_protocol="tcp", ports=INGRESS_PORTS)],
                    source_ranges=["0.0.0.0/0"],
                    target_tags=[self.firewall_tag()],
                    description=description,
                )
            }
        call(f"create {kind}", name, self.clients[kind].insert, wait=True, **self._scope(kind), **body)
        return name

    def reconcile(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        if kind != "security_boundary":
            return
        firewall = self.get(kind, resource_id)
        if firewall is not None and not firewall.disabled and allows_ssh(firewall):
            return
        call(
            "patch firewall",
            resource_id,
            self.clients[kind].patch,
            wait=True,
            project=self.project,
            firewall=resource_id,
            firewall_resource=compute_v1.Firewall(
                allowed=[compute_v1.Allowed(I_p_protocol="tcp", ports=INGRESS_PORTS)],
                disabled=False,
            ),
        )
        log(f"Restored SSH ingress on firewall '{resource_id}'")

    def delete(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        call(
            f"delete {kind}",
            resource_id,
            self.clients[kind].delete,
            missing_ok=True,
            wait=True,
            **self._scope(kind),
            **{self._id_arg(kind): resource_id},
        )


class GCPProvider(BaseProvider):
    provider_name: ProviderName = "gcp"

    def __init__(self, config: EffectiveConfig, clients: dict | None = None):
        super().__init__(config)
        self.project = config["project"]
        self.zone = config.get("zone") or f"{self.region}-a"
        self._clients = clients or {}
        self._described: dict[str, compute_v1.Instance] = {}

    def _client(self, name: str):
        if name not in self._clients:
            self._clients[name] = getattr(compute_v1, name)()
        return self._clients[name]

    @property
    def instances(self):
        return self._client("InstancesClient")

    def validate_auth(self) -> None:
        log(self.describe_identity())

    def describe_identity(self) -> str:
        with gcp_call("application-default credentials", self.project):
            _, detected_project = google.auth.default()
        return (
            f"GCP: project={self.project}  region={self.region}  zone={self.zone}  "
            f"credentials_project={detected_project or 'unknown'}"
        )

    def network_driver(self) -> NetworkDriver:
        return GCPNetworkDriver(self.project, self.region, self.cluster)

    def instance_name(self, name: str) -> str:
        return gce_name(self.cluster, name)

    def find_by_resource_name(self, name: str) -> str | None:
        instance_name = self.instance_name(name)
        found = call(
            "get instance",
            instance_name,
            self.instances.get,
            missing_ok=True,
            project=self.project,
            zone=self.zone,
            instance=instance_name,
        )
        return instance_name if found is not None else None

    def _view(self, instance) -> InstanceView:
        self._described[instance.name] = instance
        address = None
        for interface in instance.network_interfaces:
            for access in interface.access_configs:
                if access.nat_i_p:
                    address = access.nat_i_p
                    break
            if address:
                break
        labels = dict(instance.labels)
        return {
            "id": instance.name,
            "name": labels.get(GCP_NAME_LABEL, ""),
            "cluster": labels.get(GCP_CLUSTER_LABEL, ""),
            "run_state": RUN_STATES.get(instance.status, "unknown"),
            "public_address": address,
            "status_checks": "unknown",
            "key_reference": "metadata:ssh-keys",
            "zone": basename(instance.zone),
            "size": basename(instance.machine_type),
        }

    def find_instances(self, name: str | None = None) -> list[InstanceView]:
        pager = call(
            "list instances",
            name or self.cluster,
            self.instances.list,
            request=compute_v1.ListInstancesRequest(
                project=self.project, zone=self.zone, filter=gcp_label_filter(self.cluster, name)
            ),
        )
        with gcp_call("list instances", name or self.cluster):
            return [self._view(i) for i in pager]

    def ensure_key(self) -> str:
        """GCE takes the key as instance metadata; nothing is created here."""
        return f"{self.config['os_user']}:{self.public_key()}"

    def delete_key(self) -> bool:
        return False

    def create_instance(
        self, name: str, size: str, network: NetworkView, key_reference: str
    ) -> InstanceView:
        instance_name = self.instance_name(name)
        instance = compute_v1.Instance(
            name=instance_name,
            machine_type=f"zones/{self.zone}/machineTypes/{size}",
            labels=gcp_labels(name, self.cluster),
            tags=compute_v1.Tags(items=[firewall_tag(self.cluster)]),
            disks=[
                compute_v1.AttachedDisk(
                    auto_delete=True,
                    boot=True,
                    initialize_params=compute_v1.AttachedDiskInitializeParams(
                        source_image=(
                            f"projects/{self.config['image_project']}/global/images/"
                            f"family/{self.config['image_family']}"
                        ),
                    ),
                )
            ],
            network_interfaces=[
                compute_v1.NetworkInterface(
                    network=network_url(self.project, network["network_id"]),
                    subnetwork=(
                        f"projects/{self.project}/regions/{self.region}/"
                        f"subnetworks/{network['subnet_id']}"
                    ),
                    access_configs=[
                        compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT")
                    ],
                )
            ],
            metadata=compute_v1.Metadata(
                items=[compute_v1.Items(key="ssh-keys", value=key_reference)]
            ),
        )
        log(f"Waiting for instance '{instance_name}' to start...")
        call(
            "insert instance",
            instance_name,
            self.instances.insert,
            wait=True,
            project=self.project,
            zone=self.zone,
            instance_resource=instance,
        )
        created = call(
            "get instance",
            instance_name,
            self.instances.get,
            project=self.project,
            zone=self.zone,
            instance=instance_name,
        )
        return self._view(created)

    def reboot_instance(self, instance: InstanceView) -> None:
        call(
            "reset instance",
            instance["id"],
            self.instances.reset,
            wait=True,
            project=self.project,
            zone=instance.get("zone") or self.zone,
            instance=instance["id"],
        )

    def terminate_instance(self, instance: InstanceView) -> None:
        log("Waiting for instance to terminate...")
        call(
            "delete instance",
            instance["id"],
            self.instances.delete,
            missing_ok=True,
            wait=True,
            project=self.project,
            zone=instance.get("zone") or self.zone,
            instance=instance["id"],
        )

    def regions(self) -> list[dict]:
        pager = call("list regions", self.project, self._client("RegionsClient").list, project=self.project)
        with gcp_call("list regions", self.project):
            return sorted(
                ({"name": r.name, "status": r.status} for r in pager), key=lambda r: r["name"]
            )

    def zones(self, region: str | None = None) -> list[dict]:
        region = region or self.region
        pager = call("list zones", region, self._client("ZonesClient").list, project=self.project)
        with gcp_call("list zones", region):
            return sorted(
                (
                    {"name": z.name, "region": basename(z.region), "state": z.status}
                    for z in pager
                    if basename(z.region) == region
                ),
                key=lambda z: z["name"],
            )

    def status_checks(self, instance: InstanceView) -> StatusChecks:
        # GCE exposes no per-instance host checks comparable to EC2's.
        return "unknown"

    def ssh_ingress(self, instance: InstanceView, caller_ip: str | None) -> Reachability:
        raw = self._described.get(instance["id"])
        if raw is None or not raw.network_interfaces:
            return "unknown"
        network = basename(raw.network_interfaces[0].network)
        instance_tags = set(raw.tags.items) if raw.tags else set()
        pager = call(
            "list firewalls",
            network,
            self._client("FirewallsClient").list,
            project=self.project,
        )
        allows = []
        denies = []
        with gcp_call("list firewalls", network):
            for firewall in pager:
                if basename(firewall.network) != network or firewall.disabled:
                    continue
                if firewall.direction and firewall.direction != "INGRESS":
                    continue
                if firewall.target_tags and not instance_tags.intersection(firewall.target_tags):
                    continue
                if allows_ssh(firewall):
                    allows.append(firewall)
                elif denies_ssh(firewall, caller_ip):
                    denies.append(firewall)
        # Lower number wins; on a tie the deny rule wins.
        cidrs = [
            cidr
            for allow in allows
            if not any(deny.priority <= allow.priority for deny in denies)
            for cidr in allow.source_ranges
        ]
        return ingress_reachability(cidrs, caller_ip)

    def key_probe(self, instance: InstanceView, os_user: str) -> tuple[KeyProbe, str | None]:
        """Check the caller may set instance metadata, which is how keys are injected."""
        response = call(
            "test iam permissions",
            instance["id"],
            self.instances.test_iam_permissions,
            project=self.project,
            zone=instance.get("zone") or self.zone,
            resource=instance["id"],
            test_permissions_request_resource=compute_v1.TestPermissionsRequest(
                permissions=[SET_METADATA_PERMISSION]
            ),
        )
        if SET_METADATA_PERMISSION in list(response.permissions):
            return "ok", None
        return "denied", f"missing {SET_METADATA_PERMISSION}"
