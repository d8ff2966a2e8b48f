"""vmcli - Manage small VM clusters on AWS EC2, Lightsail, GCE and DigitalOcean."""

from .cli import app, main
from .config import EffectiveConfig, resolve
from .errors import (
    AlreadyInitialized,
    AmbiguousTarget,
    ClusterNotEmpty,
    ConfigError,
    IdentityMismatch,
    InstanceNotFound,
    NameCollision,
    PartialTeardown,
    ProviderError,
    ProviderThrottled,
    ProviderUnavailable,
    SshConfigWriteError,
    VmcliError,
)
from .network import NetworkTemplate
from .providers import PROVIDER_CLASSES, BaseProvider, Provider, get_provider
from .types import (
    Diagnosis,
    HealthReport,
    InstanceView,
    NetworkView,
    ProviderName,
)
from .utils import error, log, run_cmd, run_cmd_json, warn

__all__ = [
    "app",
    "main",
    "EffectiveConfig",
    "resolve",
    "NetworkTemplate",
    "BaseProvider",
    "Provider",
    "PROVIDER_CLASSES",
    "get_provider",
    "Diagnosis",
    "HealthReport",
    "InstanceView",
    "NetworkView",
    "ProviderName",
    "VmcliError",
    "ConfigError",
    "IdentityMismatch",
    "AlreadyInitialized",
    "NameCollision",
    "InstanceNotFound",
    "AmbiguousTarget",
    "ClusterNotEmpty",
    "ProviderError",
    "ProviderUnavailable",
    "ProviderThrottled",
    "PartialTeardown",
    "SshConfigWriteError",
    "log",
    "warn",
    "error",
    "run_cmd",
    "run_cmd_json",
]
