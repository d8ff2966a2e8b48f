from vmcli.sshconfig import render, write


def test_render_hosts_with_address_only():
    instances = [
        {"id": "i-1", "name": "web", "public_address": "203.0.113.10"},
        {"id": "i-2", "name": "db", "public_address": None},
        {"id": "i-3", "name": "", "public_address": "203.0.113.12"},
    ]
    network = {"network_id": "vpc-1", "security_boundary_id": "sg-1"}

    text = render(instances, network, os_user="ubuntu", identity_file="~/.ssh/vmcli")

    assert text == (
        "# network-id: vpc-1\n"
        "# security-boundary-id: sg-1\n"
        "\n"
        "Host web\n"
        "  HostName 203.0.113.10\n"
        "  User ubuntu\n"
        "  IdentitiesOnly yes\n"
        "  IdentityFile ~/.ssh/vmcli\n"
    )


def test_render_without_network():
    text = render([], {}, os_user="root", identity_file="key")
    assert text.splitlines() == ["# network-id: N/A", "# security-boundary-id: N/A"]


def test_write_derives_private_key_and_creates_dirs(tmp_path):
    path = tmp_path / "do" / "dev" / "ssh_config"

    write(
        path,
        [{"id": "1", "name": "web", "public_address": "203.0.113.10"}],
        {},
        os_user="root",
        ssh_public_key_path="~/.ssh/vmcli.pub",
    )

    text = path.read_text()
    assert "  User root" in text
    assert "  IdentityFile ~/.ssh/vmcli\n" in text
