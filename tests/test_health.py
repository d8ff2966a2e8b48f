import pytest

from conftest import CALLER_IP
from vmcli.errors import InstanceNotFound
from vmcli.health import diagnose, worst


@pytest.mark.parametrize(
    "signals, expected",
    [
        ((), "healthy"),
        (("healthy", "degraded"), "degraded"),
        (("degraded", "unreachable", "healthy"), "unreachable"),
    ],
)
def test_worst(signals, expected):
    assert worst(*signals) == expected


@pytest.mark.parametrize(
    "run_state, checks, reachability, probe, expected",
    [
        ("running", "passed", "reachable", "ok", "healthy"),
        ("stopped", "passed", "reachable", "ok", "unreachable"),
        ("running", "failed", "reachable", "ok", "degraded"),
        ("running", "passed", "unreachable", "ok", "unreachable"),
        ("running", "passed", "reachable", "denied", "degraded"),
        ("running", "passed", "reachable", "unsupported", "degraded"),
        ("running", "failed", "unreachable", "denied", "unreachable"),
        ("running", "unknown", "unknown", "unknown", "healthy"),
    ],
)
def test_diagnose_takes_worst_signal(run_state, checks, reachability, probe, expected):
    diagnosis, _ = diagnose(run_state, checks, reachability, probe)
    assert diagnosis == expected


def test_unknown_signals_are_noted():
    _, notes = diagnose("running", "unknown", "reachable", "unknown")
    assert notes == ["status-checks-unknown", "key-injection-unknown"]


def test_healthy_instance(cloud, make_provider):
    cloud.add_instance("dev", "web")

    report = make_provider("dev").health("web")

    assert report["diagnosis"] == "healthy"
    assert report["notes"] == ["all-probes-passed"]
    assert ("ssh_ingress", CALLER_IP) in cloud.calls


def test_stopped_instance_short_circuits(cloud, make_provider):
    cloud.add_instance("dev", "web", run_state="stopped")

    report = make_provider("dev").health("web")

    assert report["diagnosis"] == "unreachable"
    assert report["status_checks"] == "unknown"
    assert report["key_injection_probe"] == "unknown"
    assert not [c for c in cloud.calls if c[0] == "ssh_ingress"]


def test_no_public_address_is_unreachable(cloud, make_provider):
    cloud.add_instance("dev", "web", address=None)

    report = make_provider("dev").health("web")

    assert report["network_reachability"] == "unreachable"
    assert report["diagnosis"] == "unreachable"
    assert "no-public-address" in report["notes"]


def test_failed_checks_and_denied_key(cloud, make_provider):
    cloud.add_instance("dev", "web")
    cloud.status_checks = "failed"
    cloud.key_probe = ("denied", "AccessDenied")

    report = make_provider("dev").health("web")

    assert report["diagnosis"] == "degraded"
    assert "status-checks-failed" in report["notes"]
    assert "key-injection-denied" in report["notes"]
    assert "key-injection-reason: AccessDenied" in report["notes"]


def test_closed_ingress_outranks_degraded(cloud, make_provider):
    cloud.add_instance("dev", "web")
    cloud.status_checks = "failed"
    cloud.ingress = "unreachable"

    assert make_provider("dev").health("web")["diagnosis"] == "unreachable"


def test_health_is_cluster_scoped(cloud, make_provider):
    cloud.add_instance("prod", "web")

    with pytest.raises(InstanceNotFound):
        make_provider("dev").health("web")


def test_health_does_not_change_instance_state(cloud, make_provider):
    instance = cloud.add_instance("dev", "web")
    before = dict(instance)

    make_provider("dev").health("web")

    assert instance == before
    assert not [c for c in cloud.calls if c[0] in ("reboot", "terminate", "create")]
