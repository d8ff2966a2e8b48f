"""Provider abstraction shared by the aws, lightsail, gcp and do backends."""

import base64
import binascii
import hashlib
import importlib
import ipaddress
import urllib.error
import urllib.request
from typing import Protocol

from .config import EffectiveConfig
from .errors import AmbiguousTarget, ConfigError, InstanceNotFound, NameCollision
from .network import NetworkDriver, NetworkTemplate
from .types import (
    HealthReport,
    InstanceView,
    KeyProbe,
    NetworkView,
    ProviderName,
    Reachability,
    StatusChecks,
)
from .utils import expand_home_path, log, warn

WORLD_CIDRS = ("0.0.0.0/0", "::/0")

PROVIDER_CLASSES: dict[ProviderName, str] = {
    "aws": "vmcli.aws:AWSProvider",
    "lightsail": "vmcli.lightsail:LightsailProvider",
    "gcp": "vmcli.gcp:GCPProvider",
    "do": "vmcli.digitalocean:DigitalOceanProvider",
}


class Provider(Protocol):
    provider_name: ProviderName
    config: EffectiveConfig
    cluster: str
    region: str
    key_name: str

    def validate_auth(self) -> None: ...

    def describe_identity(self) -> str: ...

    def network_driver(self) -> NetworkDriver: ...

    def find_instances(self, name: str | None = None) -> list[InstanceView]: ...

    def up(self, name: str, size: str | None = None) -> InstanceView: ...

    def status(self) -> list[InstanceView]: ...

    def network(self) -> NetworkView: ...

    def health(self, name: str, os_user: str | None = None) -> HealthReport: ...

    def reboot(self, name: str) -> InstanceView: ...

    def destroy(self, name: str) -> InstanceView: ...

    def regions(self) -> list[dict]: ...

    def zones(self, region: str | None = None) -> list[dict]: ...

    def delete_key(self) -> bool: ...

    def find_instance(self, name: str) -> InstanceView: ...

    def status_checks(self, instance: InstanceView) -> StatusChecks: ...

    def ssh_ingress(self, instance: InstanceView, caller_ip: str | None) -> Reachability: ...

    def key_probe(self, instance: InstanceView, os_user: str) -> tuple[KeyProbe, str | None]: ...


def get_my_ip() -> str | None:
    """Get the current public IP address for SSH ingress checks.

    Queries an external service to determine the public IP address of the
    current machine. Falls back to None if the service is unreachable.

    :return: Public IP address string, or None if detection fails
    """
    try:
        response = urllib.request.urlopen("https://api.ipify.org", timeout=5)
        return response.read().decode("utf8").strip()
    except (urllib.error.URLError, OSError):
        warn("Could not determine your public IP, accepting any SSH source")
        return None


def cidr_covers(cidr: str, ip: str) -> bool:
    try:
        return ipaddress.ip_address(ip) in ipaddress.ip_network(cidr, strict=False)
    except ValueError:
        return False


def ingress_reachability(source_cidrs: list[str], caller_ip: str | None) -> Reachability:
    """Classify SSH ingress sources against the caller's address.

    :param source_cidrs: CIDRs allowed in on TCP/22 (empty: port closed)
    :param caller_ip: Caller's public IP, or None when it could not be detected
    """
    if not source_cidrs:
        return "unreachable"
    if any(cidr in WORLD_CIDRS for cidr in source_cidrs):
        return "reachable"
    if caller_ip is None:
        return "reachable"
    if any(cidr_covers(cidr, caller_ip) for cidr in source_cidrs):
        return "reachable"
    return "unreachable"


def port_in_range(port: int, from_port: int | None, to_port: int | None) -> bool:
    low = port if from_port is None else from_port
    high = port if to_port is None else to_port
    return low <= port <= high


def public_key_fingerprint(key_content: str) -> str:
    """MD5 colon fingerprint of an OpenSSH public key (DigitalOcean style)."""
    try:
        key_data = base64.b64decode(key_content.split()[1], validate=True)
    except (binascii.Error, ValueError, IndexError) as e:
        raise ConfigError(f"Not an OpenSSH public key: {e}") from e
    digest = hashlib.md5(key_data).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, 32, 2))


class BaseProvider:
    """Lifecycle steps shared by every backend.

    Subclasses implement the provider calls (`find_instances`, `ensure_key`,
    `create_instance`, `reboot_instance`, `terminate_instance`, the three
    health probes, discovery); the ordering and the fail-fast rules live here.
    """

    provider_name: ProviderName

    def __init__(self, config: EffectiveConfig):
        self.config = config
        self.cluster = config["cluster_name"]
        self.region = config["region"]

    @property
    def key_name(self) -> str:
        return f"{self.cluster}-key"

    def public_key(self) -> str:
        path = expand_home_path(self.config["ssh_public_key_path"])
        if not path.exists():
            raise ConfigError(f"SSH public key not found: '{path}'")
        content = path.read_text().strip()
        if len(content.split()) < 2:
            raise ConfigError(f"Not an OpenSSH public key: '{path}'")
        return content

    def find_instance(self, name: str) -> InstanceView:
        """The single live instance tagged Name=name, Cluster=cluster."""
        matches = self.find_instances(name)
        if not matches:
            raise InstanceNotFound(self.cluster, name)
        if len(matches) > 1:
            raise AmbiguousTarget("instance", self.cluster, name, [i["id"] for i in matches])
        return matches[0]

    def check_collision(self, name: str) -> None:
        live = [i for i in self.find_instances(name) if i.get("run_state") != "terminated"]
        if live:
            raise NameCollision(self.cluster, name, [i["id"] for i in live])
        taken = self.find_by_resource_name(name)
        if taken:
            raise NameCollision(self.cluster, name, [taken])

    def find_by_resource_name(self, name: str) -> str | None:
        """Existing resource holding the provider-side name `name` would be created under.

        Only backends that derive a unique resource name from cluster and
        name can collide this way; the others return None.
        """
        return None

    def network(self) -> NetworkView:
        return NetworkTemplate(self.network_driver(), self.cluster).discover()

    def up(self, name: str, size: str | None = None) -> InstanceView:
        """Create instance `name` in the cluster, creating the network first if needed.

        The collision check runs before anything is created and again right
        before the create call. Two concurrent runs for the same name can
        still both pass it; there is no lock.
        """
        self.check_collision(name)
        network = NetworkTemplate(self.network_driver(), self.cluster).ensure()
        key_reference = self.ensure_key()
        self.check_collision(name)
        size = size or self.config["size"]
        log(f"Creating instance '{name}' ({size}) in cluster '{self.cluster}'...")
        return self.create_instance(name, size, network, key_reference)

    def status(self) -> list[InstanceView]:
        return self.find_instances()

    def health(self, name: str, os_user: str | None = None) -> HealthReport:
        from .health import probe

        return probe(self, name, os_user or self.config["os_user"])

    def reboot(self, name: str) -> InstanceView:
        instance = self.find_instance(name)
        self.reboot_instance(instance)
        return instance

    def destroy(self, name: str) -> InstanceView:
        instance = self.find_instance(name)
        self.terminate_instance(instance)
        return instance

    # Implemented by each backend.

    def validate_auth(self) -> None:
        raise NotImplementedError

    def describe_identity(self) -> str:
        raise NotImplementedError

    def network_driver(self) -> NetworkDriver:
        raise NotImplementedError

    def find_instances(self, name: str | None = None) -> list[InstanceView]:
        raise NotImplementedError

    def ensure_key(self) -> str:
        raise NotImplementedError

    def create_instance(
        self, name: str, size: str, network: NetworkView, key_reference: str
    ) -> InstanceView:
        raise NotImplementedError

    def reboot_instance(self, instance: InstanceView) -> None:
        raise NotImplementedError

    def terminate_instance(self, instance: InstanceView) -> None:
        raise NotImplementedError

    def delete_key(self) -> bool:
        raise NotImplementedError

    def regions(self) -> list[dict]:
        raise NotImplementedError

    def zones(self, region: str | None = None) -> list[dict]:
        raise NotImplementedError

    def status_checks(self, instance: InstanceView) -> StatusChecks:
        raise NotImplementedError

    def ssh_ingress(self, instance: InstanceView, caller_ip: str | None) -> Reachability:
        raise NotImplementedError

    def key_probe(self, instance: InstanceView, os_user: str) -> tuple[KeyProbe, str | None]:
        raise NotImplementedError


def get_provider(config: EffectiveConfig) -> Provider:
    """Get a provider instance for a resolved config."""
    provider = config["provider"]
    if provider not in PROVIDER_CLASSES:
        raise ConfigError(
            f"Unknown provider: {provider}. Available: {', '.join(PROVIDER_CLASSES)}"
        )
    module_name, class_name = PROVIDER_CLASSES[provider].split(":")
    cls = getattr(importlib.import_module(module_name), class_name)
    return cls(config)
