"""AWS Lightsail backend.

Lightsail has no customer-managed network: instances get a public address and
per-instance port rules, so the network template is empty here. Instance
names are unique per region, so the Lightsail resource name is prefixed with
the cluster; the Name/Cluster tags still carry the identity.
"""

import time
from datetime import datetime, timedelta, timezone

import boto3
from botocore.exceptions import ClientError

from .aws import BOTO_CONFIG, DENIED_CODES, THROTTLE_CODES, aws_call, error_code, ignore_codes
from .config import EffectiveConfig
from .errors import ProviderError
from .network import NetworkDriver
from .providers import BaseProvider, ingress_reachability, port_in_range
from .tags import CLUSTER_TAG, MANAGED_BY, MANAGED_BY_TAG, NAME_TAG, resource_name, tag_value
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
from .utils import log

INGRESS_PORTS = (22, 80, 443)
POLL_INTERVAL = 5
POLL_TIMEOUT = 600

RUN_STATES: dict[str, RunState] = {
    "pending": "pending",
    "running": "running",
    "rebooting": "running",
    "stopping": "stopping",
    "stopped": "stopped",
    "shutting-down": "stopping",
    "terminated": "terminated",
}


class NoNetworkDriver:
    """Template driver for providers without customer-managed network resources."""

    kinds: tuple[NetworkKind, ...] = ()

    def find(self, kind: NetworkKind) -> str | None:
        return None

    def create(self, kind: NetworkKind, view: NetworkView) -> str:
        raise ProviderError(f"create {kind}", kind, "not supported by this provider")

    def reconcile(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        pass

    def delete(self, kind: NetworkKind, resource_id: str, view: NetworkView) -> None:
        pass


def lightsail_tags(name: str, cluster: str) -> list[dict]:
    return [
        {"key": NAME_TAG, "value": name},
        {"key": CLUSTER_TAG, "value": cluster},
        {"key": MANAGED_BY_TAG, "value": MANAGED_BY},
    ]


class LightsailProvider(BaseProvider):
    provider_name: ProviderName = "lightsail"

    def __init__(self, config: EffectiveConfig, session=None):
        super().__init__(config)
        self.session = session or boto3.Session(region_name=self.region)
        self._clients: dict = {}

    def _client(self, name: str):
        if name not in self._clients:
            self._clients[name] = self.session.client(name, config=BOTO_CONFIG)
        return self._clients[name]

    @property
    def lightsail(self):
        return self._client("lightsail")

    def instance_name(self, name: str) -> str:
        return resource_name(self.cluster, name)

    def find_by_resource_name(self, name: str) -> str | None:
        instance_name = self.instance_name(name)
        with aws_call("get-instance", instance_name):
            found = self._get_instance(instance_name)
        return instance_name if found is not None else None

    def validate_auth(self) -> None:
        log(self.describe_identity())

    def describe_identity(self) -> str:
        with aws_call("sts get-caller-identity", self.region):
            identity = self._client("sts").get_caller_identity()
        return (
            f"Lightsail: region={self.region}  zone={self.config['availability_zone']}  "
            f"account={identity.get('Account', 'unknown')}"
        )

    def network_driver(self) -> NetworkDriver:
        return NoNetworkDriver()

    def _view(self, instance: dict) -> InstanceView:
        tags = instance.get("tags")
        return {
            "id": instance["name"],
            "name": tag_value(tags, NAME_TAG) or "",
            "cluster": tag_value(tags, CLUSTER_TAG) or "",
            "run_state": RUN_STATES.get(instance.get("state", {}).get("name", ""), "unknown"),
            "public_address": instance.get("publicIpAddress"),
            "status_checks": "unknown",
            "key_reference": instance.get("sshKeyName", ""),
            "zone": instance.get("location", {}).get("availabilityZone", ""),
            "size": instance.get("bundleId", ""),
        }

    def find_instances(self, name: str | None = None) -> list[InstanceView]:
        views = []
        with aws_call("get-instances", name or self.cluster):
            for page in self.lightsail.get_paginator("get_instances").paginate():
                for instance in page["instances"]:
                    tags = instance.get("tags")
                    if tag_value(tags, CLUSTER_TAG) != self.cluster:
                        continue
                    if name is not None and tag_value(tags, NAME_TAG) != name:
                        continue
                    view = self._view(instance)
                    if view["run_state"] != "terminated":
                        views.append(view)
        return views

    def _key_pair_exists(self) -> bool:
        try:
            self.lightsail.get_key_pair(keyPairName=self.key_name)
            return True
        except ClientError as e:
            if error_code(e) == "NotFoundException":
                return False
            raise

    def ensure_key(self) -> str:
        with aws_call("import-key-pair", self.key_name):
            if self._key_pair_exists():
                log(f"Using existing key pair: '{self.key_name}'")
            else:
                self.lightsail.import_key_pair(
                    keyPairName=self.key_name, publicKeyBase64=self.public_key()
                )
                log(f"Imported key pair: '{self.key_name}'")
        return self.key_name

    def delete_key(self) -> bool:
        with aws_call("delete-key-pair", self.key_name):
            if not self._key_pair_exists():
                return False
            with ignore_codes("NotFoundException"):
                self.lightsail.delete_key_pair(keyPairName=self.key_name)
        return True

    def _get_instance(self, instance_name: str) -> dict | None:
        try:
            return self.lightsail.get_instance(instanceName=instance_name)["instance"]
        except ClientError as e:
            if error_code(e) == "NotFoundException":
                return None
            raise

    def _wait_for(self, instance_name: str, done, description: str) -> dict | None:
        deadline = time.monotonic() + POLL_TIMEOUT
        while True:
            instance = self._get_instance(instance_name)
            if done(instance):
                return instance
            if time.monotonic() > deadline:
                raise ProviderError(
                    f"wait {description}", instance_name, f"timed out after {POLL_TIMEOUT}s"
                )
            time.sleep(POLL_INTERVAL)

    def create_instance(
        self, name: str, size: str, network: NetworkView, key_reference: str
    ) -> InstanceView:
        instance_name = self.instance_name(name)
        with aws_call("create-instances", instance_name):
            self.lightsail.create_instances(
                instanceNames=[instance_name],
                availabilityZone=self.config["availability_zone"],
                blueprintId=self.config["blueprint_id"],
                bundleId=size,
                keyPairName=key_reference,
                tags=lightsail_tags(name, self.cluster),
            )
            log(f"Waiting for instance '{instance_name}' to start...")
            instance = self._wait_for(
                instance_name,
                lambda i: i is not None and i.get("state", {}).get("name") == "running",
                "instance-running",
            )
            self.lightsail.put_instance_public_ports(
                instanceName=instance_name,
                portInfos=[
                    {"fromPort": port, "toPort": port, "protocol": "tcp", "cidrs": ["0.0.0.0/0"]}
                    for port in INGRESS_PORTS
                ],
            )
        return self._view(instance)

    def reboot_instance(self, instance: InstanceView) -> None:
        with aws_call("reboot-instance", instance["id"]):
            self.lightsail.reboot_instance(instanceName=instance["id"])

    def terminate_instance(self, instance: InstanceView) -> None:
        with aws_call("delete-instance", instance["id"]):
            with ignore_codes("NotFoundException"):
                self.lightsail.delete_instance(instanceName=instance["id"])
            log("Waiting for instance to terminate...")
            self._wait_for(instance["id"], lambda i: i is None, "instance-deleted")

    def regions(self) -> list[dict]:
        with aws_call("get-regions", self.region):
            regions = self.lightsail.get_regions()["regions"]
        return sorted(
            ({"name": r["name"], "display_name": r.get("displayName", "")} for r in regions),
            key=lambda r: r["name"],
        )

    def zones(self, region: str | None = None) -> list[dict]:
        region = region or self.region
        with aws_call("get-regions", region):
            regions = self.lightsail.get_regions(includeAvailabilityZones=True)["regions"]
        return [
            {"name": z["zoneName"], "region": r["name"], "state": z.get("state", "")}
            for r in regions
            if r["name"] == region
            for z in r.get("availabilityZones", [])
        ]

    def status_checks(self, instance: InstanceView) -> StatusChecks:
        end = datetime.now(timezone.utc)
        with aws_call("get-instance-metric-data", instance["id"]):
            points = self.lightsail.get_instance_metric_data(
                instanceName=instance["id"],
                metricName="StatusCheckFailed",
                period=300,
                startTime=end - timedelta(minutes=15),
                endTime=end,
                unit="Count",
                statistics=["Maximum"],
            ).get("metricData", [])
        if not points:
            return "unknown"
        latest = max(points, key=lambda p: p["timestamp"])
        return "failed" if latest.get("maximum", 0) > 0 else "passed"

    def ssh_ingress(self, instance: InstanceView, caller_ip: str | None) -> Reachability:
        with aws_call("get-instance-port-states", instance["id"]):
            states = self.lightsail.get_instance_port_states(instanceName=instance["id"])[
                "portStates"
            ]
        cidrs: list[str] = []
        for state in states:
            if state.get("state") != "open":
                continue
            if state.get("protocol") not in ("tcp", "all"):
                continue
            if not port_in_range(22, state.get("fromPort"), state.get("toPort")):
                continue
            cidrs.extend(state.get("cidrs", []))
            cidrs.extend(state.get("ipv6Cidrs", []))
        return ingress_reachability(cidrs, caller_ip)

    def key_probe(self, instance: InstanceView, os_user: str) -> tuple[KeyProbe, str | None]:
        """Ask Lightsail for SSH access details (a short-lived key) for the instance."""
        with aws_call("get-instance-access-details", instance["id"]):
            try:
                details = self.lightsail.get_instance_access_details(
                    instanceName=instance["id"], protocol="ssh"
                )["accessDetails"]
            except ClientError as e:
                code = error_code(e)
                if code in THROTTLE_CODES:
                    raise
                if code in DENIED_CODES:
                    return "denied", code
                return "unsupported", code
        if details.get("username") and details.get("username") != os_user:
            return "ok", f"os user is '{details['username']}'"
        return "ok", None
