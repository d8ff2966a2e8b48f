"""Shared utility functions."""

import json
import logging
import os
import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from rich.console import Console
from rich.logging import RichHandler

from .errors import ProviderError, ProviderThrottled, ProviderUnavailable

logger = logging.getLogger("vmcli")

T = TypeVar("T")

RETRY_ATTEMPTS = 3
RETRY_DELAY = 1.0
CMD_TIMEOUT = 600

THROTTLE_MARKERS = ("429", "rate limit", "too many requests", "throttl")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl, propagate in [
        ("boto3", logging.INFO, True),
        ("botocore", logging.WARNING, True),
        ("urllib3", logging.WARNING, True),
        ("google", logging.WARNING, True),
        ("google.auth", logging.WARNING, True),
        ("grpc", logging.WARNING, True),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = propagate


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def get_ssh_user(provider_name: str) -> str:
    """Get default SSH user for cloud provider.

    :param provider_name: Cloud provider (aws, lightsail, gcp or do)
    :return: SSH username (root for DigitalOcean, ubuntu elsewhere)
    """
    return "root" if provider_name == "do" else "ubuntu"


def expand_home_path(path: str) -> Path:
    """Expand a leading '~' using $HOME."""
    trimmed = path.strip()
    if trimmed == "~":
        return Path.home()
    if trimmed.startswith("~/"):
        return Path.home() / trimmed[2:]
    return Path(trimmed)


def derive_private_key_path(public_key_path: str) -> str:
    """Private key path for an OpenSSH public key path (strip '.pub')."""
    trimmed = public_key_path.strip()
    return trimmed[:-4] if trimmed.endswith(".pub") else trimmed


def is_throttle_message(message: str) -> bool:
    lower = message.lower()
    return any(marker in lower for marker in THROTTLE_MARKERS)


def with_retries(
    call: Callable[[], T],
    *,
    attempts: int = RETRY_ATTEMPTS,
    delay: float = RETRY_DELAY,
) -> T:
    """Run `call`, retrying ProviderThrottled with exponential backoff.

    Any other error propagates immediately. After the last attempt the
    throttling error is re-raised as ProviderUnavailable.
    """
    attempt = 0
    while True:
        try:
            return call()
        except ProviderThrottled as e:
            attempt += 1
            if attempt >= attempts:
                raise ProviderUnavailable(e.operation, e.target, e.cause) from e
            wait = delay * (2 ** (attempt - 1))
            logger.debug(f"Throttled on {e.operation} '{e.target}', retrying in {wait:.1f}s")
            time.sleep(wait)


def run_cmd(*args, env: dict | None = None, timeout: int = CMD_TIMEOUT) -> str:
    """Execute local command and return stdout.

    :raises ProviderUnavailable: if the binary is missing or the call times out
    :raises ProviderThrottled: if the command reports rate limiting
    :raises ProviderError: on any other non-zero exit
    """
    operation = " ".join(str(a) for a in args[:3])
    target = str(args[3]) if len(args) > 3 else str(args[0])
    logger.debug(f"$ {' '.join(str(a) for a in args)}")
    try:
        result = subprocess.run(
            [str(a) for a in args],
            capture_output=True,
            text=True,
            timeout=timeout,
            env={**os.environ, **env} if env else None,
        )
    except FileNotFoundError:
        raise ProviderUnavailable(operation, target, f"'{args[0]}' not found in PATH")
    except subprocess.TimeoutExpired:
        raise ProviderUnavailable(operation, target, f"timed out after {timeout}s")
    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown error"
        if is_throttle_message(message):
            raise ProviderThrottled(operation, target, message)
        raise ProviderError(operation, target, message)
    return result.stdout.strip()


def run_cmd_json(*args, env: dict | None = None) -> dict | list:
    """Execute command with -o json flag and parse output."""
    output = with_retries(lambda: run_cmd(*args, "-o", "json", env=env))
    return json.loads(output) if output else []
