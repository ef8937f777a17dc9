# src/credential_orchestrator/settings.py

import os
import ipaddress
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from .error_handler import ConfigurationError

lib_logger = logging.getLogger('credential_orchestrator')


def _env_number(env: Mapping[str, str], name: str, default, cast=int):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {name} '{raw}'. Falling back to {default}.")
        return default
    if value <= 0:
        lib_logger.warning(f"{name} must be positive, got '{raw}'. Falling back to {default}.")
        return default
    return value


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class OrchestratorSettings:
    """
    Tunables for the acquisition engines and the session supervisor.

    Attributes:
        max_session_seconds: Hard wall-clock bound on any session, whatever the provider says
        callback_timeout_seconds: How long the callback listener waits for the browser redirect
        automation_timeout_seconds: How long the automated browser waits for the completion marker
        http_timeout_seconds: Timeout for each outbound HTTP request
        max_poll_interval_seconds: Upper bound for the device-code poll interval after slow_down
        cancel_grace_seconds: How long cancel() waits for an engine before cancelling its task
        session_retention: Number of terminal sessions kept around for status()
        callback_host: Loopback address the callback listener binds to
        automation_headless: Run the automated browser without a visible window
        failure_log_dir: Directory for the structured failures.log
    """

    max_session_seconds: float = 900
    callback_timeout_seconds: float = 300
    automation_timeout_seconds: float = 300
    http_timeout_seconds: float = 30
    max_poll_interval_seconds: float = 60
    cancel_grace_seconds: float = 10
    session_retention: int = 100
    callback_host: str = "127.0.0.1"
    automation_headless: bool = False
    failure_log_dir: str = "logs"

    def __post_init__(self) -> None:
        try:
            address = ipaddress.ip_address(self.callback_host)
        except ValueError:
            if self.callback_host != "localhost":
                raise ConfigurationError(
                    f"callback_host must be a loopback address, got '{self.callback_host}'"
                )
        else:
            if not address.is_loopback:
                raise ConfigurationError(
                    f"callback_host must be a loopback address, got '{self.callback_host}'"
                )
        if self.session_retention < 0:
            raise ConfigurationError("session_retention cannot be negative")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "OrchestratorSettings":
        """
        Load settings from environment variables, keeping defaults for anything unset.

        Optional environment variables:
            CAO_MAX_SESSION_SECONDS, CAO_CALLBACK_TIMEOUT, CAO_AUTOMATION_TIMEOUT,
            CAO_HTTP_TIMEOUT, CAO_MAX_POLL_INTERVAL, CAO_CANCEL_GRACE,
            CAO_SESSION_RETENTION, CAO_CALLBACK_HOST, CAO_AUTOMATION_HEADLESS, CAO_LOG_DIR
        """
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            max_session_seconds=_env_number(env, "CAO_MAX_SESSION_SECONDS", defaults.max_session_seconds, float),
            callback_timeout_seconds=_env_number(env, "CAO_CALLBACK_TIMEOUT", defaults.callback_timeout_seconds, float),
            automation_timeout_seconds=_env_number(env, "CAO_AUTOMATION_TIMEOUT", defaults.automation_timeout_seconds, float),
            http_timeout_seconds=_env_number(env, "CAO_HTTP_TIMEOUT", defaults.http_timeout_seconds, float),
            max_poll_interval_seconds=_env_number(env, "CAO_MAX_POLL_INTERVAL", defaults.max_poll_interval_seconds, float),
            cancel_grace_seconds=_env_number(env, "CAO_CANCEL_GRACE", defaults.cancel_grace_seconds, float),
            session_retention=_env_number(env, "CAO_SESSION_RETENTION", defaults.session_retention, int),
            callback_host=env.get("CAO_CALLBACK_HOST", defaults.callback_host),
            automation_headless=_env_bool(env, "CAO_AUTOMATION_HEADLESS", defaults.automation_headless),
            failure_log_dir=env.get("CAO_LOG_DIR", defaults.failure_log_dir),
        )
