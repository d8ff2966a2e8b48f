import pytest

from conftest import TEST_PUBLIC_KEY, make_config
from vmcli import digitalocean
from vmcli.digitalocean import DigitalOceanNetworkDriver, DigitalOceanProvider, rule_covers_ssh
from vmcli.errors import AmbiguousTarget, ConfigError, ProviderError
from vmcli.providers import public_key_fingerprint


class FakeDoctl:
    """Canned `doctl` responses keyed by the leading command words."""

    def __init__(self):
        self.responses = {}
        self.commands = []
        self.failures = {}

    def _key(self, args):
        for size in range(len(args), 0, -1):
            if args[:size] in self.responses or args[:size] in self.failures:
                return args[:size]
        return None

    def run_cmd_json(self, *args, env=None):
        self.commands.append(args)
        return self.responses.get(self._key(args), [])

    def run_cmd(self, *args, env=None, timeout=600):
        self.commands.append(args)
        key = self._key(args)
        if key in self.failures:
            raise ProviderError(" ".join(args[:3]), args[3], self.failures[key])
        return ""


@pytest.fixture
def doctl(monkeypatch):
    fake = FakeDoctl()
    monkeypatch.setattr(digitalocean, "run_cmd_json", fake.run_cmd_json)
    monkeypatch.setattr(digitalocean, "run_cmd", fake.run_cmd)
    return fake


@pytest.fixture
def provider(tmp_path, public_key_path):
    config = make_config(
        "dev",
        tmp_path,
        public_key_path,
        provider="do",
        region="nyc3",
        size="s-1vcpu-1gb",
        os_user="root",
        image="ubuntu-24-04-x64",
    )
    return DigitalOceanProvider(config)


@pytest.mark.parametrize(
    "rule, expected",
    [
        ({"protocol": "tcp", "ports": "22"}, True),
        ({"protocol": "tcp", "ports": "20-30"}, True),
        ({"protocol": "tcp", "ports": "all"}, True),
        ({"protocol": "tcp", "ports": "443"}, False),
        ({"protocol": "udp", "ports": "22"}, False),
    ],
)
def test_rule_covers_ssh(rule, expected):
    assert rule_covers_ssh(rule) is expected


def test_find_ambiguous_vpc(doctl):
    doctl.responses[("doctl", "vpcs", "list")] = [
        {"id": "a", "name": "dev-vpc"},
        {"id": "b", "name": "dev-vpc"},
        {"id": "c", "name": "prod-vpc"},
    ]

    with pytest.raises(AmbiguousTarget) as excinfo:
        DigitalOceanNetworkDriver("dev", "nyc3").find("network")

    assert excinfo.value.ids == ["a", "b"]


def test_create_firewall_bound_to_cluster_tag(doctl):
    doctl.responses[("doctl", "compute", "firewall", "create")] = [{"id": "fw-1"}]

    resource_id = DigitalOceanNetworkDriver("dev", "nyc3").create("security_boundary", {})

    assert resource_id == "fw-1"
    assert ("doctl", "compute", "tag", "create", "vmcli-cluster-dev") in doctl.commands
    create = next(c for c in doctl.commands if c[:4] == ("doctl", "compute", "firewall", "create"))
    assert create[create.index("--tag-names") + 1] == "vmcli-cluster-dev"
    assert "protocol:tcp,ports:22," in create[create.index("--inbound-rules") + 1]


def test_reconcile_restores_missing_ssh_rule(doctl):
    doctl.responses[("doctl", "compute", "firewall", "list")] = [
        {
            "id": "fw-1",
            "name": "dev-fw",
            "tags": ["vmcli-cluster-dev"],
            "inbound_rules": [{"protocol": "tcp", "ports": "443"}],
        }
    ]

    DigitalOceanNetworkDriver("dev", "nyc3").reconcile("security_boundary", "fw-1", {})

    assert any(c[:4] == ("doctl", "compute", "firewall", "add-rules") for c in doctl.commands)
    assert not any(c[:4] == ("doctl", "compute", "firewall", "add-tags") for c in doctl.commands)


def test_delete_tolerates_not_found(doctl):
    doctl.failures[("doctl", "vpcs", "delete")] = "Error: 404 (vpc) not found"
    DigitalOceanNetworkDriver("dev", "nyc3").delete("network", "vpc-1", {})

    doctl.failures[("doctl", "compute", "firewall", "delete")] = "Error: 409 conflict"
    with pytest.raises(ProviderError):
        DigitalOceanNetworkDriver("dev", "nyc3").delete("security_boundary", "fw-1", {})


def droplet(droplet_id, name, status="active", tags=("vmcli-cluster-dev",)):
    return {
        "id": droplet_id,
        "name": name,
        "status": status,
        "tags": list(tags),
        "networks": {
            "v4": [
                {"type": "private", "ip_address": "10.10.0.2"},
                {"type": "public", "ip_address": "203.0.113.20"},
            ]
        },
        "region": {"slug": "nyc3"},
        "size_slug": "s-1vcpu-1gb",
    }


def test_find_instances_by_cluster_tag(doctl, provider):
    doctl.responses[("doctl", "compute", "droplet", "list")] = [
        droplet(1, "web"),
        droplet(2, "db"),
    ]

    [view] = provider.find_instances("web")

    assert ("doctl", "compute", "droplet", "list", "--tag-name", "vmcli-cluster-dev") in doctl.commands
    assert view["id"] == "1"
    assert view["cluster"] == "dev"
    assert view["run_state"] == "running"
    assert view["public_address"] == "203.0.113.20"
    assert view["zone"] == "nyc3"


def test_ssh_ingress_without_firewall_is_reachable(doctl, provider):
    doctl.responses[("doctl", "compute", "droplet", "list")] = [droplet(1, "web")]
    [view] = provider.find_instances("web")

    assert provider.ssh_ingress(view, "198.51.100.7") == "reachable"


def test_ssh_ingress_from_tagged_firewall(doctl, provider):
    doctl.responses[("doctl", "compute", "droplet", "list")] = [droplet(1, "web")]
    doctl.responses[("doctl", "compute", "firewall", "list")] = [
        {
            "id": "fw-1",
            "tags": ["vmcli-cluster-dev"],
            "droplet_ids": [],
            "inbound_rules": [
                {"protocol": "tcp", "ports": "22", "sources": {"addresses": ["192.0.2.0/24"]}}
            ],
        }
    ]
    [view] = provider.find_instances("web")

    assert provider.ssh_ingress(view, "198.51.100.7") == "unreachable"
    assert provider.ssh_ingress(view, "192.0.2.14") == "reachable"


def test_key_probe_checks_registered_fingerprint(doctl, provider):
    instance = {"id": "1", "zone": "nyc3"}
    assert provider.key_probe(instance, "root") == ("denied", "ssh-key-not-registered")

    doctl.responses[("doctl", "compute", "ssh-key", "list")] = [
        {"id": 7, "name": "dev-key", "fingerprint": public_key_fingerprint(TEST_PUBLIC_KEY)}
    ]
    assert provider.key_probe(instance, "root") == ("ok", None)


def test_ensure_key_reuses_matching_fingerprint(doctl, provider):
    doctl.responses[("doctl", "compute", "ssh-key", "list")] = [
        {"id": 7, "name": "laptop", "fingerprint": public_key_fingerprint(TEST_PUBLIC_KEY)}
    ]

    assert provider.ensure_key() == "7"
    assert not any(c[:4] == ("doctl", "compute", "ssh-key", "create") for c in doctl.commands)


def test_delete_key_only_removes_cluster_key(doctl, provider):
    doctl.responses[("doctl", "compute", "ssh-key", "list")] = [
        {"id": 7, "name": "laptop", "fingerprint": "aa"},
        {"id": 8, "name": "dev-key", "fingerprint": "bb"},
    ]

    assert provider.delete_key() is True
    deletes = [c for c in doctl.commands if c[:4] == ("doctl", "compute", "ssh-key", "delete")]
    assert deletes == [("doctl", "compute", "ssh-key", "delete", "8", "--force")]


@pytest.fixture
def bad_key_provider(tmp_path):
    path = tmp_path / "bad.pub"
    path.write_text("ssh-ed25519 not*base64 someone@laptop\n")
    return DigitalOceanProvider(
        make_config("dev", tmp_path, path, provider="do", region="nyc3", image="ubuntu-24-04-x64")
    )


def test_malformed_public_key_is_a_config_error(doctl, bad_key_provider):
    with pytest.raises(ConfigError, match="Not an OpenSSH public key"):
        bad_key_provider.ensure_key()
    assert not any(c[:4] == ("doctl", "compute", "ssh-key", "create") for c in doctl.commands)

    status, reason = bad_key_provider.key_probe({"id": "1", "zone": "nyc3"}, "root")
    assert status == "unknown"
    assert "Not an OpenSSH public key" in reason


def test_validate_auth_logs_account(doctl, provider, caplog):
    doctl.responses[("doctl", "account", "get")] = {"email": "ops@example.com", "status": "active"}

    with caplog.at_level("INFO", logger="vmcli"):
        provider.validate_auth()

    assert ("doctl", "auth", "validate") in doctl.commands
    assert "email=ops@example.com" in caplog.text
