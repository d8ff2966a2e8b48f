"""DigitalOcean backend, driven through the `doctl` CLI.

Droplets are grouped by the `vmcli-cluster-<cluster>` tag. The cluster gets a
VPC and a cloud firewall bound to that tag. DigitalOcean has no subnets,
gateways or route tables to manage.
"""

from .config import EffectiveConfig
from .errors import AmbiguousTarget, ConfigError, ProviderError
from .network import NetworkDriver
from .providers import BaseProvider, ingress_reachability, public_key_fingerprint
from .tags import do_cluster_tag, resource_name
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
from .utils import log, run_cmd, run_cmd_json

INGRESS_PORTS = ("22", "80", "443")
WORLD_SOURCES = "address:0.0.0.0/0,address:::/0"
OUTBOUND_RULES = " ".join(
    f"protocol:{protocol},ports:all,{WORLD_SOURCES}" for protocol in ("tcp", "udp")
) + f" protocol:icmp,{WORLD_SOURCES}"

RUN_STATES: dict[str, RunState] = {
    "new": "pending",
    "active": "running",
    "off": "stopped",
    "archive": "terminated",
}


def is_not_found(e: ProviderError) -> bool:
    cause = e.cause.lower()
    return "404" in cause or "not found" in cause


def inbound_rules(ports) -> str:
    return " ".join(f"protocol:tcp,ports:{port},{WORLD_SOURCES}" for port in ports)


def rule_covers_ssh(rule: dict) -> bool:
    if rule.get("protocol") != "tcp":
        return False
    ports = str(rule.get("ports", ""))
    if ports in ("all", "0", ""):
        return True
    low, _, high = ports.partition("-")
    return int(low) <= 22 <= int(high or low)


def public_ip(droplet: dict) -> str | None:
    return next(
        (
            n["ip_address"]
            for n in droplet.get("networks", {}).get("v4", [])
            if n.get("type") == "public"
        ),
        None,
    )


class DigitalOceanNetworkDriver:
    kinds: tuple[NetworkKind, ...] = ("network", "security_boundary")

    def __init__(self, cluster: str, region: str):
        self.cluster = cluster
        self.region = region
        self.tag = do_cluster_tag(cluster)

    def name(self, kind: NetworkKind) -> str:
        return resource_name(self.cluster, "vpc" if kind == "network" else "fw")

    def _list(self, kind: NetworkKind) -> list[dict]:
        if kind == "network":
            return run_cmd_json("doctl", "vpcs", "list")
        return run_cmd_json("doctl", "compute", "firewall", "list")

    def get(self, kind: NetworkKind) -> dict | None:
        name = self.name(kind)
        matches = [item for item in self._list(kind) if item.get("name") == name]
        if len(matches) > 1:
            raise AmbiguousTarget(kind, self.cluster, name, [str(m["id"]) for m in matches])
        return matches[0] if matches else None

    def find(self, kind: NetworkKind) -> str | None:
        item = self.get(kind)
        return str(item["id"]) if item else None

    def create(self, kind: NetworkKind, view: NetworkView) -> str:
        name = self.name(kind)
        if kind == "network":
            created = run_cmd_json(
                "doctl", "vpcs", "create",
                "--name", name,
                "--region", self.region,
                "--description", f"vmcli cluster {self.cluster}",
            )
        else:
            run_cmd("doctl", "compute", "tag", "create", self.tag)
            created = run_cmd_json(
                "doctl", "compute", "firewall", "create",
                "--name", name,
                "--inbound-rules", inbound_rules(INGRESS_PORTS),
                "--outbound-rules", OUTBOUND_RULES,
                "--tag-names", self.tag,
            )
        item = created[0] if isinstance(created, list) else created
        return str(item["id"])

    def reconcile(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        if kind != "security_boundary":
            return
        firewall = self.get(kind) or {}
        if not any(rule_covers_ssh(r) for r in firewall.get("inbound_rules") or []):
            run_cmd(
                "doctl", "compute", "firewall", "add-rules", resource_id,
                "--inbound-rules", inbound_rules(["22"]),
            )
            log(f"Restored SSH ingress on firewall '{resource_id}'")
        if self.tag not in (firewall.get("tags") or []):
            run_cmd("doctl", "compute", "tag", "create", self.tag)
            run_cmd(
                "doctl", "compute", "firewall", "add-tags", resource_id, "--tag-names", self.tag
            )

    def delete(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        try:
            if kind == "network":
                run_cmd("doctl", "vpcs", "delete", resource_id, "--force")
            else:
                run_cmd("doctl", "compute", "firewall", "delete", resource_id, "--force")
        except ProviderError as e:
            if not is_not_found(e):
                raise


class DigitalOceanProvider(BaseProvider):
    provider_name: ProviderName = "do"

    def __init__(self, config: EffectiveConfig):
        super().__init__(config)
        self.tag = do_cluster_tag(self.cluster) if self.cluster else ""
        self._described: dict[str, dict] = {}

    def validate_auth(self) -> None:
        run_cmd("doctl", "auth", "validate")
        log(self.describe_identity())

    def describe_identity(self) -> str:
        account = run_cmd_json("doctl", "account", "get")
        if isinstance(account, list):
            account = account[0] if account else {}
        return (
            f"DigitalOcean: region={self.region}  email={account.get('email', 'unknown')}  "
            f"status={account.get('status', 'unknown')}"
        )

    def network_driver(self) -> NetworkDriver:
        return DigitalOceanNetworkDriver(self.cluster, self.region)

    def _view(self, droplet: dict) -> InstanceView:
        droplet_id = str(droplet["id"])
        self._described[droplet_id] = droplet
        return {
            "id": droplet_id,
            "name": droplet.get("name", ""),
            "cluster": self.cluster if self.tag in (droplet.get("tags") or []) else "",
            "run_state": RUN_STATES.get(droplet.get("status", ""), "unknown"),
            "public_address": public_ip(droplet),
            "status_checks": "unknown",
            "key_reference": self.key_name,
            "zone": droplet.get("region", {}).get("slug", ""),
            "size": droplet.get("size_slug", ""),
        }

    def find_instances(self, name: str | None = None) -> list[InstanceView]:
        droplets = run_cmd_json("doctl", "compute", "droplet", "list", "--tag-name", self.tag)
        return [
            self._view(d)
            for d in droplets
            if (name is None or d.get("name") == name) and d.get("status") != "archive"
        ]

    def _keys(self) -> list[dict]:
        return run_cmd_json("doctl", "compute", "ssh-key", "list")

    def ensure_key(self) -> str:
        fingerprint = public_key_fingerprint(self.public_key())
        existing = next((k for k in self._keys() if k["fingerprint"] == fingerprint), None)
        if existing:
            log(f"Found matching SSH key in DigitalOcean: '{existing['name']}'")
            return str(existing["id"])
        log("Uploading SSH key to DigitalOcean...")
        created = run_cmd_json(
            "doctl", "compute", "ssh-key", "create", self.key_name,
            "--public-key", self.public_key(),
        )
        key = created[0] if isinstance(created, list) else created
        log(f"Uploaded SSH key: '{self.key_name}'")
        return str(key["id"])

    def delete_key(self) -> bool:
        owned = [k for k in self._keys() if k.get("name") == self.key_name]
        for key in owned:
            run_cmd("doctl", "compute", "ssh-key", "delete", str(key["id"]), "--force")
        return bool(owned)

    def create_instance(
        self, name: str, size: str, network: NetworkView, key_reference: str
    ) -> InstanceView:
        args = [
            "doctl", "compute", "droplet", "create", name,
            "--region", self.region,
            "--size", size,
            "--image", self.config["image"],
            "--ssh-keys", key_reference,
            "--tag-names", self.tag,
        ]
        if network.get("network_id"):
            args += ["--vpc-uuid", network["network_id"]]
        log(f"Waiting for droplet '{name}' to become active...")
        created = run_cmd_json(*args, "--wait")
        if not created:
            raise ProviderError("compute droplet create", name, "no droplet returned")
        return self._view(created[0])

    def reboot_instance(self, instance: InstanceView) -> None:
        run_cmd("doctl", "compute", "droplet-action", "reboot", instance["id"], "--wait")

    def terminate_instance(self, instance: InstanceView) -> None:
        try:
            run_cmd("doctl", "compute", "droplet", "delete", instance["id"], "--force")
        except ProviderError as e:
            if not is_not_found(e):
                raise

    def regions(self) -> list[dict]:
        regions = run_cmd_json("doctl", "compute", "region", "list")
        return sorted(
            (
                {"name": r["slug"], "display_name": r.get("name", ""), "available": r.get("available")}
                for r in regions
            ),
            key=lambda r: r["name"],
        )

    def zones(self, region: str | None = None) -> list[dict]:
        """DigitalOcean has no zones below a region; the region is its own zone."""
        region = region or self.region
        return [
            {"name": r["name"], "region": r["name"], "state": "available" if r["available"] else "unavailable"}
            for r in self.regions()
            if r["name"] == region
        ]

    def status_checks(self, instance: InstanceView) -> StatusChecks:
        return "unknown"

    def ssh_ingress(self, instance: InstanceView, caller_ip: str | None) -> Reachability:
        droplet_tags = set(self._described.get(instance["id"], {}).get("tags") or [])
        firewalls = [
            fw
            for fw in run_cmd_json("doctl", "compute", "firewall", "list")
            if instance["id"] in [str(i) for i in fw.get("droplet_ids") or []]
            or droplet_tags.intersection(fw.get("tags") or [])
        ]
        if not firewalls:
            # No cloud firewall applies: every port is open.
            return "reachable"
        cidrs = [
            address
            for fw in firewalls
            for rule in fw.get("inbound_rules") or []
            if rule_covers_ssh(rule)
            for address in (rule.get("sources") or {}).get("addresses") or []
        ]
        return ingress_reachability(cidrs, caller_ip)

    def key_probe(self, instance: InstanceView, os_user: str) -> tuple[KeyProbe, str | None]:
        """Droplets only take keys at creation; check the cluster key is still registered."""
        try:
            fingerprint = public_key_fingerprint(self.public_key())
        except ConfigError as e:
            return "unknown", str(e)
        if any(k["fingerprint"] == fingerprint for k in self._keys()):
            return "ok", None
        return "denied", "ssh-key-not-registered"
