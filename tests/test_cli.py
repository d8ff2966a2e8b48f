from types import SimpleNamespace

import pytest

from vmcli import cli, lifecycle
from vmcli.errors import ConfigError, PartialTeardown


def test_print_table_pads_columns(capsys):
    cli.print_table(
        [
            {"name": "web", "id": "i-1", "public_address": "203.0.113.10"},
            {"name": "database", "id": "i-22", "public_address": None},
        ],
        [("name", "NAME"), ("id", "ID"), ("public_address", "IP ADDRESS")],
    )

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "  NAME      ID    IP ADDRESS"
    assert lines[2] == "  web       i-1   203.0.113.10"
    assert lines[3] == "  database  i-22  N/A"


@pytest.mark.parametrize("answer, expected", [("y", True), (" YES ", True), ("n", False), ("", False)])
def test_confirm(monkeypatch, answer, expected):
    monkeypatch.setattr("builtins.input", lambda prompt: answer)
    assert cli.confirm("Delete? ") is expected


def test_main_reports_errors_with_exit_code(monkeypatch):
    def fail():
        raise ConfigError("Missing config")

    monkeypatch.setattr(cli, "app", SimpleNamespace(meta=fail))

    with pytest.raises(SystemExit) as excinfo:
        cli.main()

    assert excinfo.value.code == 1


def test_main_treats_partial_teardown_as_warning(monkeypatch):
    def partial():
        raise PartialTeardown("dev", ["route_table"], "gateway", "DependencyViolation")

    monkeypatch.setattr(cli, "app", SimpleNamespace(meta=partial))

    cli.main()


def test_every_provider_has_the_same_verbs():
    verbs = {"init", "up", "status", "health", "reboot", "destroy", "prune", "regions", "zones"}
    for provider in ("aws", "lightsail", "gcp", "do"):
        sub = cli.make_provider_app(provider)
        for verb in verbs:
            assert sub[verb] is not None, (provider, verb)


def run(sub, tokens):
    try:
        sub(tokens)
    except SystemExit as e:
        assert not e.code


@pytest.mark.parametrize("verb", ["status", "health"])
def test_read_only_verbs_print_account_banner(monkeypatch, verb):
    calls = []
    adapter = SimpleNamespace(validate_auth=lambda: calls.append("auth"))
    monkeypatch.setattr(lifecycle, "open_cluster", lambda *args, **kwargs: adapter)
    monkeypatch.setattr(
        lifecycle, "status", lambda a: calls.append("status") or {"instances": [], "network": {}}
    )
    monkeypatch.setattr(
        lifecycle, "health", lambda a, name, os_user: calls.append("health") or {}
    )

    tokens = [verb, "dev", "web", "--json"] if verb == "health" else [verb, "dev", "--json"]
    run(cli.make_provider_app("aws"), tokens)

    assert calls == ["auth", verb]
