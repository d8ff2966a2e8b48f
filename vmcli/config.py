"""Configuration loading and merging.

Layout under the config root (``$VMCLI_CONFIG_DIR`` or ``~/.config/vmcli``)::

    config.toml                      global defaults, one table per provider
    <provider>/<cluster>/config.toml cluster config (cluster_name + provider table)
    <provider>/<cluster>/ssh_config  rendered SSH fragment

Precedence, lowest first: built-in defaults, global table, cluster table (or
the file given with ``-c``), command-line overrides. Empty strings count as
unset in every layer.
"""

import json
import os
import tomllib
from pathlib import Path
from typing import TypedDict

from dotenv import load_dotenv

from .errors import ConfigError, IdentityMismatch
from .types import ProviderName
from .utils import get_ssh_user

CONFIG_FILE_NAME = "config.toml"
SSH_CONFIG_FILE = "ssh_config"
DEFAULT_SSH_PUBLIC_KEY_PATH = "~/.ssh/vmcli.pub"

SIZE_KEYS: dict[ProviderName, str] = {
    "aws": "default_instance_type",
    "lightsail": "bundle_id",
    "gcp": "machine_type",
    "do": "size",
}

SECTION_KEYS: dict[ProviderName, tuple[str, ...]] = {
    "aws": ("region", "ssh_public_key_path", "default_instance_type", "ami_id", "os_user"),
    "lightsail": (
        "region",
        "availability_zone",
        "ssh_public_key_path",
        "bundle_id",
        "blueprint_id",
        "os_user",
    ),
    "gcp": (
        "project",
        "region",
        "zone",
        "ssh_public_key_path",
        "machine_type",
        "image_project",
        "image_family",
        "os_user",
    ),
    "do": ("region", "ssh_public_key_path", "size", "image", "os_user"),
}

DEFAULTS: dict[ProviderName, dict[str, str]] = {
    "aws": {
        "region": "ap-northeast-1",
        "default_instance_type": "t3.micro",
    },
    "lightsail": {
        "region": "ap-northeast-1",
        "bundle_id": "nano_3_0",
        "blueprint_id": "ubuntu_24_04",
    },
    "gcp": {
        "region": "asia-northeast1",
        "machine_type": "e2-micro",
        "image_project": "ubuntu-os-cloud",
        "image_family": "ubuntu-2404-lts-amd64",
    },
    "do": {
        "region": "syd1",
        "size": "s-1vcpu-1gb",
        "image": "ubuntu-24-04-x64",
    },
}

# Keys written into a freshly initialized cluster config, in order.
SCAFFOLD_KEYS: dict[ProviderName, tuple[str, ...]] = {
    "aws": ("region", "ssh_public_key_path", "default_instance_type", "ami_id"),
    "lightsail": ("region", "availability_zone", "ssh_public_key_path", "bundle_id", "blueprint_id"),
    "gcp": ("project", "region", "zone", "ssh_public_key_path", "machine_type", "image_family"),
    "do": ("region", "ssh_public_key_path", "size", "image"),
}

PROFILE_ENV_VARS = ("AWS_PROFILE", "AWS_DEFAULT_PROFILE")


class EffectiveConfig(TypedDict, total=False):
    """Resolved configuration for one cluster. Rebuilt on every invocation."""

    provider: ProviderName
    cluster_name: str
    region: str
    ssh_public_key_path: str
    size: str
    os_user: str
    cluster_dir: Path
    ssh_config_path: Path
    # aws
    ami_id: str | None
    # lightsail
    availability_zone: str
    blueprint_id: str
    # gcp
    project: str
    zone: str
    image_project: str
    image_family: str
    # do
    image: str


def config_root() -> Path:
    override = os.getenv("VMCLI_CONFIG_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "vmcli"


def global_config_path(root: Path | None = None) -> Path:
    return (root or config_root()) / CONFIG_FILE_NAME


def cluster_dir(provider: ProviderName, cluster: str, root: Path | None = None) -> Path:
    return (root or config_root()) / provider / cluster


def cluster_config_path(provider: ProviderName, cluster: str, root: Path | None = None) -> Path:
    return cluster_dir(provider, cluster, root) / CONFIG_FILE_NAME


def load_toml(path: Path) -> dict:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse config '{path}': {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config '{path}': {e}") from e


def normalize_section(provider: ProviderName, section: object) -> dict[str, str]:
    """Keep known keys of a provider table, trimmed, dropping empty values."""
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"[{provider}] must be a table")
    normalized = {}
    for key in SECTION_KEYS[provider]:
        value = section.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise ConfigError(f"{provider}.{key} must be a string")
        value = value.strip()
        if value:
            normalized[key] = value
    return normalized


def merge_sections(*layers: dict[str, str]) -> dict[str, str]:
    """Merge layers left to right; later non-empty values win per key."""
    merged: dict[str, str] = {}
    for layer in layers:
        for key, value in layer.items():
            if value is not None and value != "":
                merged[key] = value
    return merged


def load_global_section(provider: ProviderName, root: Path | None = None) -> dict[str, str]:
    path = global_config_path(root)
    if not path.exists():
        return {}
    return normalize_section(provider, load_toml(path).get(provider))


def check_credential_env(provider: ProviderName) -> None:
    """Reject profile selection for AWS-backed providers; credentials come from env only."""
    if provider not in ("aws", "lightsail"):
        return
    present = [name for name in PROFILE_ENV_VARS if os.getenv(name)]
    if present:
        raise ConfigError(
            f"AWS profiles are not supported ({', '.join(present)} set); "
            "use AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY"
        )


def resolve(
    provider: ProviderName,
    cluster: str,
    *,
    config_path: str | Path | None = None,
    overrides: dict[str, str | None] | None = None,
    root: Path | None = None,
) -> EffectiveConfig:
    """Build the effective config for one cluster.

    :param provider: Provider the cluster lives in
    :param cluster: Cluster name given on the command line
    :param config_path: Cluster config file to use instead of the default one
    :param overrides: Highest-precedence values (e.g. the size flag); None is ignored
    :param root: Config root (default: config_root())
    :raises ConfigError: on missing/invalid files or required keys
    :raises IdentityMismatch: if the file declares a different cluster_name
    """
    load_dotenv()
    check_credential_env(provider)

    path = Path(config_path).expanduser() if config_path else cluster_config_path(provider, cluster, root)
    if not path.exists():
        raise ConfigError(
            f"Config file '{path}' not found; run 'vmcli {provider} init {cluster}'"
        )
    cluster_doc = load_toml(path)
    declared = cluster_doc.get("cluster_name")
    if isinstance(declared, str) and declared.strip() and declared.strip() != cluster:
        raise IdentityMismatch(declared.strip(), cluster, str(path))

    override_layer = normalize_section(
        provider, {k: v for k, v in (overrides or {}).items() if v is not None}
    )
    merged = merge_sections(
        DEFAULTS[provider],
        {"ssh_public_key_path": DEFAULT_SSH_PUBLIC_KEY_PATH},
        load_global_section(provider, root),
        normalize_section(provider, cluster_doc.get(provider)),
        override_layer,
    )

    directory = cluster_dir(provider, cluster, root)
    config: EffectiveConfig = {
        "provider": provider,
        "cluster_name": cluster,
        "region": merged["region"],
        "ssh_public_key_path": merged["ssh_public_key_path"],
        "size": merged[SIZE_KEYS[provider]],
        "os_user": merged.get("os_user") or get_ssh_user(provider),
        "cluster_dir": directory,
        "ssh_config_path": directory / SSH_CONFIG_FILE,
    }

    if provider == "aws":
        config["ami_id"] = merged.get("ami_id")
    elif provider == "lightsail":
        config["availability_zone"] = merged.get("availability_zone") or f"{merged['region']}a"
        config["blueprint_id"] = merged["blueprint_id"]
    elif provider == "gcp":
        project = merged.get("project") or os.getenv("GOOGLE_CLOUD_PROJECT")
        if not project:
            raise ConfigError("gcp.project must be set in config or GOOGLE_CLOUD_PROJECT")
        config["project"] = project
        config["zone"] = merged.get("zone") or f"{merged['region']}-a"
        config["image_project"] = merged["image_project"]
        config["image_family"] = merged["image_family"]
    elif provider == "do":
        config["image"] = merged["image"]

    return config


def discovery_config(
    provider: ProviderName, region: str | None = None, root: Path | None = None
) -> EffectiveConfig:
    """Config for cluster-independent calls (regions/zones): defaults + global table."""
    load_dotenv()
    check_credential_env(provider)
    merged = merge_sections(
        DEFAULTS[provider],
        {"ssh_public_key_path": DEFAULT_SSH_PUBLIC_KEY_PATH},
        load_global_section(provider, root),
        {"region": region} if region else {},
    )
    config: EffectiveConfig = {
        "provider": provider,
        "cluster_name": "",
        "region": merged["region"],
        "ssh_public_key_path": merged["ssh_public_key_path"],
        "size": merged[SIZE_KEYS[provider]],
        "os_user": merged.get("os_user") or get_ssh_user(provider),
    }
    if provider == "gcp":
        project = merged.get("project") or os.getenv("GOOGLE_CLOUD_PROJECT")
        if not project:
            raise ConfigError("gcp.project must be set in config or GOOGLE_CLOUD_PROJECT")
        config["project"] = project
    return config


def default_config_contents(provider: ProviderName, cluster: str, root: Path | None = None) -> str:
    """TOML text for a new cluster config; global defaults win over built-ins."""
    values = merge_sections(
        DEFAULTS[provider],
        {"ssh_public_key_path": DEFAULT_SSH_PUBLIC_KEY_PATH},
        load_global_section(provider, root),
    )
    if provider == "gcp" and "project" not in values and os.getenv("GOOGLE_CLOUD_PROJECT"):
        values["project"] = os.environ["GOOGLE_CLOUD_PROJECT"]

    lines = [f"cluster_name = {json.dumps(cluster)}", "", f"[{provider}]"]
    for key in SCAFFOLD_KEYS[provider]:
        lines.append(f"{key} = {json.dumps(values.get(key, ''))}")
    return "\n".join(lines) + "\n"
