"""Shared fixtures: an in-memory cloud for unit tests, live options for integration tests."""

import itertools

import pytest

from vmcli.errors import AmbiguousTarget, ProviderError
from vmcli.network import CREATE_ORDER
from vmcli.providers import BaseProvider

TEST_PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIBtL5eTn9sKRNuIoJ2gt3cOfUVw2cJzc1z2ZnE0k6Tqk test@vmcli"
CALLER_IP = "198.51.100.7"


def pytest_addoption(parser):
    parser.addoption(
        "--provider",
        default="aws",
        help="Cloud provider for integration tests (default: aws)",
    )
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against a real cloud account",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-integration"):
        return
    skip = pytest.mark.skip(reason="needs --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(scope="session")
def provider_name(request):
    return request.config.getoption("--provider")


@pytest.fixture(autouse=True)
def no_ip_lookup(monkeypatch):
    monkeypatch.setattr("vmcli.health.get_my_ip", lambda: CALLER_IP)


@pytest.fixture
def config_root(tmp_path, monkeypatch):
    root = tmp_path / "vmcli"
    monkeypatch.setenv("VMCLI_CONFIG_DIR", str(root))
    for name in ("AWS_PROFILE", "AWS_DEFAULT_PROFILE", "GOOGLE_CLOUD_PROJECT"):
        monkeypatch.delenv(name, raising=False)
    return root


@pytest.fixture
def public_key_path(tmp_path):
    path = tmp_path / "keys" / "vmcli.pub"
    path.parent.mkdir(parents=True)
    path.write_text(TEST_PUBLIC_KEY + "\n")
    return path


def make_config(cluster, tmp_path, public_key_path, provider="aws", **extra):
    directory = tmp_path / "vmcli" / provider / cluster
    config = {
        "provider": provider,
        "cluster_name": cluster,
        "region": "ap-northeast-1",
        "ssh_public_key_path": str(public_key_path),
        "size": "t3.micro",
        "os_user": "ubuntu",
        "cluster_dir": directory,
        "ssh_config_path": directory / "ssh_config",
    }
    config.update(extra)
    return config


class FakeCloud:
    """One provider account shared by every cluster in a test."""

    def __init__(self):
        self.instances = []
        self.resources = {}
        self.keys = set()
        self.calls = []
        self.fail_delete = None
        self.status_checks = "passed"
        self.ingress = "reachable"
        self.key_probe = ("ok", None)
        self._ids = itertools.count(1)

    def new_id(self, prefix):
        return f"{prefix}-{next(self._ids)}"

    def add_instance(self, cluster, name, run_state="running", address="203.0.113.10"):
        instance = {
            "id": self.new_id("i"),
            "name": name,
            "cluster": cluster,
            "run_state": run_state,
            "public_address": address,
            "status_checks": "unknown",
            "key_reference": f"{cluster}-key",
            "zone": "ap-northeast-1a",
            "size": "t3.micro",
        }
        self.instances.append(instance)
        return instance


class FakeDriver:
    def __init__(self, cloud, cluster, kinds=CREATE_ORDER):
        self.cloud = cloud
        self.cluster = cluster
        self.kinds = tuple(kinds)

    def find(self, kind):
        ids = self.cloud.resources.get((self.cluster, kind), [])
        if len(ids) > 1:
            raise AmbiguousTarget(kind, self.cluster, f"{self.cluster}-{kind}", ids)
        return ids[0] if ids else None

    def create(self, kind, view):
        resource_id = self.cloud.new_id(kind)
        self.cloud.resources[(self.cluster, kind)] = [resource_id]
        self.cloud.calls.append(("create", kind))
        return resource_id

    def reconcile(self, kind, resource_id, view):
        self.cloud.calls.append(("reconcile", kind))

    def delete(self, kind, resource_id, view):
        if self.cloud.fail_delete == kind:
            raise ProviderError(f"delete {kind}", resource_id, "DependencyViolation")
        self.cloud.resources.pop((self.cluster, kind), None)
        self.cloud.calls.append(("delete", kind))


class FakeProvider(BaseProvider):
    provider_name = "aws"

    def __init__(self, config, cloud):
        super().__init__(config)
        self.cloud = cloud

    def validate_auth(self):
        pass

    def describe_identity(self):
        return "fake account"

    def network_driver(self):
        return FakeDriver(self.cloud, self.cluster)

    def find_instances(self, name=None):
        return [
            dict(i)
            for i in self.cloud.instances
            if i["cluster"] == self.cluster
            and (name is None or i["name"] == name)
            and i["run_state"] != "terminated"
        ]

    def ensure_key(self):
        self.cloud.keys.add(self.key_name)
        return self.key_name

    def delete_key(self):
        present = self.key_name in self.cloud.keys
        self.cloud.keys.discard(self.key_name)
        return present

    def create_instance(self, name, size, network, key_reference):
        self.cloud.calls.append(("create", "instance"))
        instance = self.cloud.add_instance(self.cluster, name)
        instance["size"] = size
        return dict(instance)

    def reboot_instance(self, instance):
        self.cloud.calls.append(("reboot", instance["id"]))

    def terminate_instance(self, instance):
        self.cloud.calls.append(("terminate", instance["id"]))
        for i in self.cloud.instances:
            if i["id"] == instance["id"]:
                i["run_state"] = "terminated"

    def regions(self):
        return [{"name": "ap-northeast-1"}]

    def zones(self, region=None):
        return [{"name": f"{region or self.region}a", "region": region or self.region}]

    def status_checks(self, instance):
        return self.cloud.status_checks

    def ssh_ingress(self, instance, caller_ip):
        self.cloud.calls.append(("ssh_ingress", caller_ip))
        return self.cloud.ingress

    def key_probe(self, instance, os_user):
        return self.cloud.key_probe


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def make_provider(cloud, tmp_path, public_key_path):
    def _make(cluster="dev", **extra):
        return FakeProvider(make_config(cluster, tmp_path, public_key_path, **extra), cloud)

    return _make
