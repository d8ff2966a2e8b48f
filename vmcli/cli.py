#!/usr/bin/env python3
"""Manage small VM clusters on AWS EC2, Lightsail, GCE and DigitalOcean.

Credentials come from the environment only (a .env file is loaded if present).

Usage: vmcli <aws|lightsail|gcp|do> <verb> [options]

Examples:
    vmcli aws init dev
    vmcli aws up dev web1 -T t3.small
    vmcli aws status dev
    vmcli aws health dev web1
    vmcli do destroy dev web1 -f
    vmcli gcp prune dev
    vmcli lightsail zones --region ap-northeast-1 --json
"""

import logging
from typing import Annotated

import cyclopts
from cyclopts import Parameter
from rich import print, print_json as rich_print_json

from . import lifecycle
from .config import SIZE_KEYS
from .errors import PartialTeardown, VmcliError
from .types import HealthReport, InstanceView, ProviderName, PROVIDER_NAMES
from .utils import error, log, setup_logging, warn

GROUP_HELP: dict[ProviderName, str] = {
    "aws": "AWS EC2 clusters (VPC, subnet, gateway, route table, security group)",
    "lightsail": "AWS Lightsail clusters (per-instance public ports)",
    "gcp": "Google Compute Engine clusters (network, subnetwork, firewall, route)",
    "do": "DigitalOcean clusters (VPC, cloud firewall)",
}

SIZE_FLAGS: dict[ProviderName, tuple[str, str]] = {
    "aws": ("--instance-type", "-T"),
    "lightsail": ("--bundle-id", "-B"),
    "gcp": ("--machine-type", "-M"),
    "do": ("--size", "-S"),
}

DIAGNOSIS_COLORS = {"healthy": "green", "degraded": "yellow", "unreachable": "red"}

app = cyclopts.App(
    name="vmcli", help="Manage small VM clusters across cloud providers", sort_key=None
)


def confirm(prompt: str) -> bool:
    answer = input(prompt)
    return answer.strip().lower() in ("y", "yes")


def print_json(data) -> None:
    rich_print_json(data=data, default=str)


def print_table(rows: list[dict], columns: list[tuple[str, str]]) -> None:
    """Print rows as a fixed-width table.

    :param columns: (key, header) pairs, in display order
    """
    cells = [
        ["N/A" if row.get(key) is None else str(row.get(key)) for key, _ in columns]
        for row in rows
    ]
    widths = [
        max([len(header)] + [len(r[i]) for r in cells]) for i, (_, header) in enumerate(columns)
    ]
    print("  " + "  ".join(h.ljust(w) for (_, h), w in zip(columns, widths)).rstrip())
    print("  " + "  ".join("-" * w for w in widths))
    for r in cells:
        print("  " + "  ".join(c.ljust(w) for c, w in zip(r, widths)).rstrip())


def print_instance(instance: InstanceView) -> None:
    print(f"  Name: {instance.get('name')}")
    print(f"  ID: {instance['id']}")
    print(f"  State: {instance['run_state']}")
    print(f"  IP: {instance.get('public_address') or 'N/A'}")
    print(f"  Zone: {instance.get('zone') or 'N/A'}")
    print(f"  Size: {instance.get('size') or 'N/A'}")


def print_health(report: HealthReport) -> None:
    color = DIAGNOSIS_COLORS[report["diagnosis"]]
    print(f"Health of '{report['name']}' in cluster '{report['cluster']}':")
    print(f"  Instance: {report['instance_id']}")
    print(f"  Run state: {report['run_state']}")
    print(f"  Status checks: {report['status_checks']}")
    print(f"  SSH ingress: {report['network_reachability']}")
    print(f"  Key injection: {report['key_injection_probe']}")
    print(f"  Diagnosis: [{color}]{report['diagnosis']}[/{color}]")
    for note in report["notes"]:
        print(f"    - {note}")


def make_provider_app(provider: ProviderName) -> cyclopts.App:
    """Build the command group for one provider. Every group has the same verbs."""
    sub = cyclopts.App(name=provider, help=GROUP_HELP[provider])
    size_key = SIZE_KEYS[provider]

    ConfigOption = Annotated[str | None, Parameter(name=["--config", "-c"])]
    ForceOption = Annotated[bool, Parameter(name=["--force", "-f"], negative="")]
    SizeOption = Annotated[str | None, Parameter(name=list(SIZE_FLAGS[provider]))]
    JsonOption = Annotated[bool, Parameter(name="--json", negative="")]

    def open_cluster(cluster: str, config: str | None, size: str | None = None):
        return lifecycle.open_cluster(
            provider, cluster, config_path=config, overrides={size_key: size}
        )

    @sub.command(name="init")
    def init(cluster: str):
        """Create the cluster config directory with defaults.

        :param cluster: Cluster name
        """
        directory = lifecycle.init(provider, cluster)
        print(f"Edit {directory / 'config.toml'} then run: vmcli {provider} up {cluster} <name>")
        print(f"Add to ~/.ssh/config: Include {directory / 'ssh_config'}")

    @sub.command(name="up")
    def up(
        cluster: str,
        name: str,
        *,
        size: SizeOption = None,
        config: ConfigOption = None,
    ):
        """Create an instance, creating the cluster network first if needed.

        :param cluster: Cluster name
        :param name: Instance name (unique within the cluster)
        :param size: Instance size (overrides the config default)
        :param config: Cluster config file to use instead of the default
        """
        adapter = open_cluster(cluster, config, size)
        adapter.validate_auth()
        instance = lifecycle.up(adapter, name, size)
        print("[green]Instance ready:[/green]")
        print_instance(instance)
        print(f"  SSH: ssh {name}")

    @sub.command(name="status")
    def status(cluster: str, *, config: ConfigOption = None, as_json: JsonOption = False):
        """List the cluster's instances and network, and refresh ssh_config.

        :param cluster: Cluster name
        :param config: Cluster config file to use instead of the default
        :param as_json: Print JSON instead of a table
        """
        adapter = open_cluster(cluster, config)
        adapter.validate_auth()
        result = lifecycle.status(adapter)
        if as_json:
            print_json(result)
            return
        for key, value in result["network"].items():
            print(f"{key}={value}")
        if not result["instances"]:
            log(f"No instances found in cluster '{cluster}'")
            return
        print_table(
            result["instances"],
            [
                ("name", "NAME"),
                ("id", "ID"),
                ("run_state", "STATE"),
                ("public_address", "IP ADDRESS"),
                ("zone", "ZONE"),
                ("size", "SIZE"),
            ],
        )

    @sub.command(name="health")
    def health(
        cluster: str,
        name: str,
        *,
        config: ConfigOption = None,
        os_user: str | None = None,
        as_json: JsonOption = False,
    ):
        """Diagnose an instance without logging in to it.

        :param cluster: Cluster name
        :param name: Instance name
        :param config: Cluster config file to use instead of the default
        :param os_user: OS user for the key-injection probe (default from config)
        :param as_json: Print JSON instead of text
        """
        adapter = open_cluster(cluster, config)
        adapter.validate_auth()
        report = lifecycle.health(adapter, name, os_user)
        if as_json:
            print_json(report)
        else:
            print_health(report)

    @sub.command(name="reboot")
    def reboot(cluster: str, name: str, *, config: ConfigOption = None):
        """Reboot an instance of the cluster.

        :param cluster: Cluster name
        :param name: Instance name
        :param config: Cluster config file to use instead of the default
        """
        adapter = open_cluster(cluster, config)
        adapter.validate_auth()
        lifecycle.reboot(adapter, name)

    @sub.command(name="destroy")
    def destroy(
        cluster: str, name: str, *, force: ForceOption = False, config: ConfigOption = None
    ):
        """Terminate an instance. The cluster network is kept.

        :param cluster: Cluster name
        :param name: Instance name
        :param force: Skip confirmation prompt
        :param config: Cluster config file to use instead of the default
        """
        adapter = open_cluster(cluster, config)
        adapter.validate_auth()
        lifecycle.destroy(adapter, name, force=force, confirm=confirm)

    @sub.command(name="prune")
    def prune(
        cluster: str,
        *,
        force: ForceOption = False,
        config: ConfigOption = None,
        remove_config: bool = False,
    ):
        """Delete the cluster network and key pair once no instances remain.

        :param cluster: Cluster name
        :param force: Skip confirmation prompts
        :param config: Cluster config file to use instead of the default
        :param remove_config: Also remove the local cluster config directory
        """
        adapter = open_cluster(cluster, config)
        adapter.validate_auth()
        result = lifecycle.prune(
            adapter, force=force, confirm=confirm, remove_config=remove_config
        )
        if not result["aborted"]:
            deleted = ", ".join(result["deleted"]) or "none"
            print(f"pruned cluster={cluster} deleted={deleted} key-deleted={result['key_deleted']}")

    @sub.command(name="regions")
    def regions(*, as_json: JsonOption = False):
        """List regions available to the account.

        :param as_json: Print JSON instead of a table
        """
        rows = lifecycle.regions(lifecycle.open_discovery(provider))
        if as_json:
            print_json(rows)
        elif rows:
            print_table(rows, [(key, key.upper().replace("_", " ")) for key in rows[0]])

    @sub.command(name="zones")
    def zones(*, region: str | None = None, as_json: JsonOption = False):
        """List zones of a region.

        :param region: Region (default from config)
        :param as_json: Print JSON instead of a table
        """
        rows = lifecycle.zones(lifecycle.open_discovery(provider, region), region)
        if as_json:
            print_json(rows)
        elif rows:
            print_table(rows, [("name", "ZONE"), ("region", "REGION"), ("state", "STATE")])
        else:
            warn(f"No zones found for region '{region or '(default)'}'")

    return sub


for _provider in PROVIDER_NAMES:
    app.command(make_provider_app(_provider))


@app.meta.default
def launcher(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    verbose: bool = False,
):
    """Manage small VM clusters across cloud providers.

    :param verbose: Show debug logging
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    app(tokens)


def main() -> None:
    try:
        app.meta()
    except PartialTeardown as e:
        warn(str(e))
    except VmcliError as e:
        error(str(e))


if __name__ == "__main__":
    main()
