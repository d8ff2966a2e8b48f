"""Non-invasive instance diagnostics.

A failed local `ssh` can mean a stopped instance, failing host checks, a
closed port or a rejected key. The probe checks each layer separately through
the provider's control plane and never opens a session.

A negative answer from the provider is a diagnosis (exit code 0). Failing to
ask (auth, transport, missing instance) raises.
"""

from typing import TYPE_CHECKING

from .providers import get_my_ip
from .types import Diagnosis, HealthReport, InstanceView, KeyProbe, Reachability, StatusChecks
from .utils import logger

if TYPE_CHECKING:
    from .providers import Provider

SEVERITY: dict[Diagnosis, int] = {"healthy": 0, "degraded": 1, "unreachable": 2}


def worst(*diagnoses: Diagnosis) -> Diagnosis:
    return max(diagnoses, key=SEVERITY.__getitem__, default="healthy")


def diagnose(
    run_state: str,
    status_checks: StatusChecks,
    reachability: Reachability,
    key_probe: KeyProbe,
) -> tuple[Diagnosis, list[str]]:
    """Combine the four signals into a diagnosis plus notes.

    Ordering is healthy < degraded < unreachable; the worst signal wins.
    Unknown signals do not move the result but are noted.
    """
    if run_state != "running":
        return "unreachable", ["instance-not-running"]

    signals: list[Diagnosis] = []
    notes: list[str] = []

    if status_checks == "failed":
        signals.append("degraded")
        notes.append("status-checks-failed")
    elif status_checks == "unknown":
        notes.append("status-checks-unknown")

    if reachability == "unreachable":
        signals.append("unreachable")
        notes.append("ssh-ingress-closed")
    elif reachability == "unknown":
        notes.append("ssh-ingress-unknown")

    if key_probe in ("denied", "unsupported"):
        signals.append("degraded")
        notes.append(f"key-injection-{key_probe}")
    elif key_probe == "unknown":
        notes.append("key-injection-unknown")

    diagnosis = worst(*signals)
    if diagnosis == "healthy" and not notes:
        notes.append("all-probes-passed")
    return diagnosis, notes


def _report(
    provider: "Provider",
    name: str,
    instance: InstanceView,
    status_checks: StatusChecks,
    reachability: Reachability,
    key_probe: KeyProbe,
    extra_notes: list[str],
) -> HealthReport:
    diagnosis, notes = diagnose(instance["run_state"], status_checks, reachability, key_probe)
    return {
        "cluster": provider.cluster,
        "name": instance.get("name") or name,
        "instance_id": instance["id"],
        "run_state": instance["run_state"],
        "status_checks": status_checks,
        "network_reachability": reachability,
        "key_injection_probe": key_probe,
        "diagnosis": diagnosis,
        "notes": notes + extra_notes,
    }


def probe(provider: "Provider", name: str, os_user: str) -> HealthReport:
    """Run the four-layer probe for instance `name` of the provider's cluster.

    :raises InstanceNotFound: no live instance with Name=name in the cluster
    :raises AmbiguousTarget: more than one match
    :raises ProviderError: a probe call could not be made
    """
    instance = provider.find_instance(name)
    if instance["run_state"] != "running":
        return _report(provider, name, instance, "unknown", "unknown", "unknown", [])

    status_checks = provider.status_checks(instance)
    logger.debug(f"status checks: {status_checks}")

    extra: list[str] = []
    if instance.get("public_address"):
        reachability = provider.ssh_ingress(instance, get_my_ip())
    else:
        reachability = "unreachable"
        extra.append("no-public-address")
    logger.debug(f"ssh ingress: {reachability}")

    key_probe, reason = provider.key_probe(instance, os_user)
    if reason:
        extra.append(f"key-injection-reason: {reason}")
    logger.debug(f"key injection: {key_probe}")

    return _report(provider, name, instance, status_checks, reachability, key_probe, extra)
