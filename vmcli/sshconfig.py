"""Render the per-cluster ssh_config fragment.

Include it from ``~/.ssh/config``::

    Include ~/.config/vmcli/aws/dev/ssh_config
"""

from pathlib import Path

from .types import InstanceView, NetworkView
from .utils import derive_private_key_path, logger


def render(
    instances: list[InstanceView],
    network: NetworkView,
    *,
    os_user: str,
    identity_file: str,
) -> str:
    """Build the fragment text.

    Instances without a name or a public address are left out.

    :param identity_file: Private key path written to every Host block
    """
    lines = [
        f"# network-id: {network.get('network_id') or 'N/A'}",
        f"# security-boundary-id: {network.get('security_boundary_id') or 'N/A'}",
        "",
    ]
    for instance in instances:
        if not instance.get("name") or not instance.get("public_address"):
            continue
        lines += [
            f"Host {instance['name']}",
            f"  HostName {instance['public_address']}",
            f"  User {os_user}",
            "  IdentitiesOnly yes",
            f"  IdentityFile {identity_file}",
            "",
        ]
    return "\n".join(lines)


def write(
    path: Path,
    instances: list[InstanceView],
    network: NetworkView,
    *,
    os_user: str,
    ssh_public_key_path: str,
) -> Path:
    """Write the fragment to `path`, creating parent directories.

    :raises OSError: if the file cannot be written
    """
    text = render(
        instances,
        network,
        os_user=os_user,
        identity_file=derive_private_key_path(ssh_public_key_path),
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    logger.debug(f"Wrote {path}")
    return path
