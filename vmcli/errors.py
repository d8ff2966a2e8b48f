"""Error taxonomy for vmcli.

Every error the CLI reports derives from :class:`VmcliError`. Structural errors
(collisions, missing or ambiguous targets, config problems) are never retried;
:class:`ProviderThrottled` is the only retryable one.
"""

from collections.abc import Iterable


class VmcliError(Exception):
    """Base class for all vmcli errors. Reported as a single line, exit code 1."""


class ConfigError(VmcliError):
    """Missing, invalid or inconsistent configuration."""


class IdentityMismatch(ConfigError):
    def __init__(self, declared: str, requested: str, path: str):
        self.declared = declared
        self.requested = requested
        self.path = path
        super().__init__(
            f"cluster_name '{declared}' does not match requested cluster "
            f"'{requested}' in '{path}'"
        )


class AlreadyInitialized(ConfigError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Cluster config directory already exists: '{path}'")


class NameCollision(VmcliError):
    def __init__(self, cluster: str, name: str, ids: Iterable[str]):
        self.cluster = cluster
        self.name = name
        self.ids = list(ids)
        super().__init__(
            f"Instance Name={name} Cluster={cluster} already exists "
            f"({', '.join(self.ids)})"
        )


class InstanceNotFound(VmcliError):
    def __init__(self, cluster: str, name: str):
        self.cluster = cluster
        self.name = name
        super().__init__(f"No instance found with Name={name} Cluster={cluster}")


class AmbiguousTarget(VmcliError):
    def __init__(self, kind: str, cluster: str, name: str, ids: Iterable[str]):
        self.kind = kind
        self.cluster = cluster
        self.name = name
        self.ids = list(ids)
        super().__init__(
            f"Multiple {kind} resources found with Name={name} Cluster={cluster}: "
            f"{', '.join(self.ids)}"
        )


class ClusterNotEmpty(VmcliError):
    def __init__(self, cluster: str, names: Iterable[str]):
        self.cluster = cluster
        self.names = list(names)
        super().__init__(
            f"Cannot prune cluster '{cluster}' while instances exist: "
            f"{', '.join(self.names)}"
        )


class ProviderError(VmcliError):
    """A provider call failed. Carries the operation and the target it acted on."""

    def __init__(self, operation: str, target: str, cause: str):
        self.operation = operation
        self.target = target
        self.cause = cause
        super().__init__(f"{operation} '{target}' failed: {cause}")


class ProviderUnavailable(ProviderError):
    """Provider API unreachable, timed out, or still throttling after retries."""


class ProviderThrottled(ProviderUnavailable):
    """Transient throttling, retried with backoff."""


class PartialTeardown(VmcliError):
    """Network teardown stopped partway. Re-running prune resumes it."""

    def __init__(self, cluster: str, completed: list[str], failed: str, cause: str):
        self.cluster = cluster
        self.completed = completed
        self.failed = failed
        self.cause = cause
        done = ", ".join(completed) if completed else "none"
        super().__init__(
            f"Teardown of cluster '{cluster}' stopped at {failed}: {cause} "
            f"(completed: {done}). Re-run prune to resume."
        )


class SshConfigWriteError(VmcliError):
    """The instance exists but its ssh_config entry could not be written."""

    def __init__(self, instance: dict, path: str, cause: Exception):
        self.instance = instance
        self.path = path
        super().__init__(
            f"Instance '{instance.get('name')}' ({instance.get('id')}, "
            f"{instance.get('public_address') or 'no public address'}) was created "
            f"but writing '{path}' failed: {cause}"
        )
