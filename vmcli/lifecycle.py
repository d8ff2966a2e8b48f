"""Lifecycle operations shared by every provider group of the CLI.

Each call rebuilds what it needs from config and provider tags; nothing is
carried between invocations. Confirmation prompts are passed in as callables
so the CLI owns the terminal.
"""

import shutil
from collections.abc import Callable
from pathlib import Path

from .config import (
    CONFIG_FILE_NAME,
    SSH_CONFIG_FILE,
    EffectiveConfig,
    cluster_dir,
    default_config_contents,
    discovery_config,
    resolve,
)
from .errors import AlreadyInitialized, ClusterNotEmpty, SshConfigWriteError, VmcliError
from .network import NetworkTemplate
from .providers import Provider, get_provider
from .sshconfig import write as write_ssh_config
from .types import HealthReport, InstanceView, ProviderName, PruneResult, StatusResult
from .utils import log, warn

Confirm = Callable[[str], bool]


def _declined(confirm: Confirm | None, prompt: str) -> bool:
    return confirm is None or not confirm(prompt)


def init(provider: ProviderName, cluster: str, root: Path | None = None) -> Path:
    """Create the cluster config directory with config.toml and an empty ssh_config.

    :raises AlreadyInitialized: if the directory already exists
    """
    directory = cluster_dir(provider, cluster, root)
    if directory.exists():
        raise AlreadyInitialized(str(directory))
    contents = default_config_contents(provider, cluster, root)
    directory.mkdir(parents=True)
    (directory / CONFIG_FILE_NAME).write_text(contents)
    (directory / SSH_CONFIG_FILE).write_text("")
    log(f"Created {directory / CONFIG_FILE_NAME}")
    log(f"Created {directory / SSH_CONFIG_FILE}")
    return directory


def open_cluster(
    provider: ProviderName,
    cluster: str,
    *,
    config_path: str | None = None,
    overrides: dict[str, str | None] | None = None,
    root: Path | None = None,
) -> Provider:
    """Resolve config for one cluster and return its provider adapter."""
    return get_provider(
        resolve(provider, cluster, config_path=config_path, overrides=overrides, root=root)
    )


def open_discovery(
    provider: ProviderName, region: str | None = None, root: Path | None = None
) -> Provider:
    return get_provider(discovery_config(provider, region, root))


def refresh_ssh_config(
    adapter: Provider,
    instances: list[InstanceView] | None = None,
    network=None,
) -> Path:
    config: EffectiveConfig = adapter.config
    return write_ssh_config(
        config["ssh_config_path"],
        adapter.status() if instances is None else instances,
        adapter.network() if network is None else network,
        os_user=config["os_user"],
        ssh_public_key_path=config["ssh_public_key_path"],
    )


def up(adapter: Provider, name: str, size: str | None = None) -> InstanceView:
    """Create instance `name` and refresh the ssh_config fragment.

    :raises NameCollision: before any resource is created
    :raises SshConfigWriteError: the instance was created but the fragment was not written
    """
    instance = adapter.up(name, size)
    log(f"Instance '{name}' is {instance['run_state']}: {instance['id']}")
    try:
        refresh_ssh_config(adapter)
    except (OSError, VmcliError) as e:
        raise SshConfigWriteError(instance, adapter.config["ssh_config_path"], e) from e
    return instance


def status(adapter: Provider) -> StatusResult:
    instances = adapter.status()
    network = adapter.network()
    refresh_ssh_config(adapter, instances, network)
    return {"instances": instances, "network": network}


def health(adapter: Provider, name: str, os_user: str | None = None) -> HealthReport:
    return adapter.health(name, os_user)


def reboot(adapter: Provider, name: str) -> InstanceView:
    instance = adapter.reboot(name)
    log(f"Reboot requested for '{name}' ({instance['id']})")
    return instance


def destroy(
    adapter: Provider, name: str, *, force: bool = False, confirm: Confirm | None = None
) -> InstanceView | None:
    """Terminate instance `name` of the cluster. Network resources are left alone.

    :return: the terminated instance, or None if the user declined
    """
    instance = adapter.find_instance(name)
    if not force and _declined(
        confirm,
        f"Terminate instance '{name}' ({instance['id']}) in cluster '{adapter.cluster}'? [y/N]: ",
    ):
        log("Aborted")
        return None
    instance = adapter.destroy(name)
    log(f"Terminated '{name}' ({instance['id']})")
    refresh_ssh_config(adapter)
    return instance


def prune(
    adapter: Provider,
    *,
    force: bool = False,
    confirm: Confirm | None = None,
    remove_config: bool = False,
) -> PruneResult:
    """Tear down the cluster network and key once no instances remain.

    :raises ClusterNotEmpty: if any non-terminated instance is tagged with the cluster
    :raises PartialTeardown: if a teardown step fails; re-running resumes it
    """
    instances = adapter.status()
    if instances:
        raise ClusterNotEmpty(adapter.cluster, [i.get("name") or i["id"] for i in instances])

    template = NetworkTemplate(adapter.network_driver(), adapter.cluster)
    view = template.discover()
    result: PruneResult = {
        "cluster": adapter.cluster,
        "network": view,
        "deleted": [],
        "key_deleted": False,
        "config_removed": False,
        "aborted": False,
    }

    if view:
        summary = ", ".join(f"{k}={v}" for k, v in view.items())
        if not force and _declined(
            confirm, f"Prune network resources for cluster '{adapter.cluster}' ({summary})? [y/N]: "
        ):
            log("Aborted")
            result["aborted"] = True
            return result
        result["deleted"] = template.ensure_absent()
    else:
        log(f"No network resources found for cluster '{adapter.cluster}'")

    if force or not _declined(confirm, f"Delete key pair '{adapter.key_name}'? [y/N]: "):
        result["key_deleted"] = adapter.delete_key()
        if result["key_deleted"]:
            log(f"Deleted key pair '{adapter.key_name}'")

    directory = adapter.config["cluster_dir"]
    if remove_config and not directory.exists():
        warn(f"Local config '{directory}' not found, nothing to remove")
    elif remove_config and (
        force or not _declined(confirm, f"Remove local config '{directory}'? [y/N]: ")
    ):
        shutil.rmtree(directory)
        result["config_removed"] = True
        log(f"Removed {directory}")
    elif directory.exists():
        try:
            refresh_ssh_config(adapter, [], {})
        except OSError as e:
            warn(f"Could not rewrite ssh_config: {e}")
    return result


def regions(adapter: Provider) -> list[dict]:
    return adapter.regions()


def zones(adapter: Provider, region: str | None = None) -> list[dict]:
    return adapter.zones(region)
