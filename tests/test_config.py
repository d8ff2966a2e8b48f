import pytest

from vmcli import lifecycle
from vmcli.config import (
    default_config_contents,
    discovery_config,
    merge_sections,
    resolve,
)
from vmcli.errors import ConfigError, IdentityMismatch


def write_cluster_config(root, provider, cluster, body):
    directory = root / provider / cluster
    directory.mkdir(parents=True)
    path = directory / "config.toml"
    path.write_text(body)
    return path


def test_merge_sections_later_non_empty_wins():
    merged = merge_sections({"a": "1", "b": "1"}, {"a": "", "b": "2"}, {"c": "3"})
    assert merged == {"a": "1", "b": "2", "c": "3"}


def test_builtin_defaults(config_root):
    write_cluster_config(config_root, "aws", "dev", 'cluster_name = "dev"\n')

    config = resolve("aws", "dev")

    assert config["region"] == "ap-northeast-1"
    assert config["size"] == "t3.micro"
    assert config["ssh_public_key_path"] == "~/.ssh/vmcli.pub"
    assert config["os_user"] == "ubuntu"
    assert config["ssh_config_path"] == config_root / "aws" / "dev" / "ssh_config"


def test_precedence_defaults_global_cluster_flags(config_root):
    config_root.mkdir(parents=True)
    (config_root / "config.toml").write_text(
        '[aws]\nregion = "us-west-2"\ndefault_instance_type = "t3.small"\n'
        'ssh_public_key_path = "~/.ssh/global.pub"\n'
    )
    write_cluster_config(
        config_root,
        "aws",
        "dev",
        'cluster_name = "dev"\n[aws]\ndefault_instance_type = "t3.medium"\nregion = ""\n',
    )

    config = resolve("aws", "dev")
    assert config["region"] == "us-west-2"
    assert config["size"] == "t3.medium"
    assert config["ssh_public_key_path"] == "~/.ssh/global.pub"

    flagged = resolve("aws", "dev", overrides={"default_instance_type": "t3.large"})
    assert flagged["size"] == "t3.large"

    unset_flag = resolve("aws", "dev", overrides={"default_instance_type": None})
    assert unset_flag["size"] == "t3.medium"


def test_global_table_is_per_provider(config_root):
    config_root.mkdir(parents=True)
    (config_root / "config.toml").write_text('[do]\nregion = "nyc3"\n')
    write_cluster_config(config_root, "aws", "dev", 'cluster_name = "dev"\n')

    assert resolve("aws", "dev")["region"] == "ap-northeast-1"


def test_identity_mismatch(config_root, tmp_path):
    path = tmp_path / "other.toml"
    path.write_text('cluster_name = "prod"\n')

    with pytest.raises(IdentityMismatch) as excinfo:
        resolve("aws", "dev", config_path=path)

    assert excinfo.value.declared == "prod"
    assert excinfo.value.requested == "dev"


def test_config_path_replaces_cluster_file(config_root, tmp_path):
    path = tmp_path / "custom.toml"
    path.write_text('cluster_name = "dev"\n[aws]\nregion = "eu-west-1"\n')

    assert resolve("aws", "dev", config_path=path)["region"] == "eu-west-1"


def test_missing_config_points_to_init(config_root):
    with pytest.raises(ConfigError, match="vmcli aws init dev"):
        resolve("aws", "dev")


def test_invalid_toml(config_root):
    write_cluster_config(config_root, "aws", "dev", "cluster_name = \n")
    with pytest.raises(ConfigError, match="Failed to parse"):
        resolve("aws", "dev")


def test_non_string_value_rejected(config_root):
    write_cluster_config(config_root, "aws", "dev", "[aws]\nregion = 3\n")
    with pytest.raises(ConfigError, match="aws.region must be a string"):
        resolve("aws", "dev")


@pytest.mark.parametrize("variable", ["AWS_PROFILE", "AWS_DEFAULT_PROFILE"])
def test_aws_profiles_rejected(config_root, monkeypatch, variable):
    write_cluster_config(config_root, "aws", "dev", 'cluster_name = "dev"\n')
    monkeypatch.setenv(variable, "work")

    with pytest.raises(ConfigError, match=variable):
        resolve("aws", "dev")


def test_profiles_ignored_outside_aws(config_root, monkeypatch):
    write_cluster_config(config_root, "do", "dev", 'cluster_name = "dev"\n')
    monkeypatch.setenv("AWS_PROFILE", "work")

    config = resolve("do", "dev")

    assert config["size"] == "s-1vcpu-1gb"
    assert config["os_user"] == "root"
    assert config["image"] == "ubuntu-24-04-x64"


def test_lightsail_derived_zone(config_root):
    write_cluster_config(
        config_root, "lightsail", "dev", 'cluster_name = "dev"\n[lightsail]\nregion = "us-east-1"\n'
    )

    config = resolve("lightsail", "dev")

    assert config["availability_zone"] == "us-east-1a"
    assert config["size"] == "nano_3_0"
    assert config["blueprint_id"] == "ubuntu_24_04"


def test_gcp_requires_project(config_root, monkeypatch):
    write_cluster_config(config_root, "gcp", "dev", 'cluster_name = "dev"\n')

    with pytest.raises(ConfigError, match="gcp.project"):
        resolve("gcp", "dev")

    monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "my-project")
    config = resolve("gcp", "dev")
    assert config["project"] == "my-project"
    assert config["zone"] == "asia-northeast1-a"
    assert config["size"] == "e2-micro"


def test_scaffold_prefers_global_values(config_root):
    config_root.mkdir(parents=True)
    (config_root / "config.toml").write_text('[aws]\nregion = "us-east-2"\n')

    text = default_config_contents("aws", "dev")

    assert 'cluster_name = "dev"' in text
    assert 'region = "us-east-2"' in text
    assert 'default_instance_type = "t3.micro"' in text
    assert 'ami_id = ""' in text


def test_init_then_resolve_round_trip(config_root):
    lifecycle.init("aws", "dev")

    config = resolve("aws", "dev")

    assert config["cluster_name"] == "dev"
    assert config["ami_id"] is None


def test_discovery_config_region_override(config_root):
    config = discovery_config("aws", "eu-central-1")
    assert config["region"] == "eu-central-1"
    assert config["cluster_name"] == ""
