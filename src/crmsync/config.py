"""Client configuration for crmsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from crmsync.exceptions import CrmConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MqttSettings:
    """Change-feed broker connection fields.

    Each watched table maps to the topic ``{topic_prefix}/{table}``.
    """

    host: str = "localhost"
    port: int = 8883
    tls: bool = True
    topic_prefix: str = "crm/changes"
    keepalive: int = 120
    username: str | None = None
    password: str | None = None
    client_id_prefix: str = "crmsync"


@dataclasses.dataclass(frozen=True)
class CrmConfig:
    """Client configuration.

    Parameters
    ----------
    base_url : str
        Store base URL. Tables are served under ``{base_url}/rest/v1/{table}``.
    api_key : str
        Store API key, sent as ``apikey`` and bearer token.
    schema : str
        Database schema the tables live in.
    request_timeout : float or None
        Total aiohttp timeout for store calls in seconds. ``None`` means no
        timeout is imposed.
    rate_limit_max_keys : int
        Maximum number of distinct keys the rate limiter keeps buckets for.
    rate_limit_default : int
        Default request count allowed per window for the HTTP middleware.
    rate_limit_window_ms : int
        Default window length for the HTTP middleware, in milliseconds.
    feed_enabled : bool
        Open change-feed channels. When disabled, collections are fetched once
        and only refresh on explicit request.
    api_trace_enabled : bool
        Log redacted store request/response bodies at DEBUG.
    mqtt : MqttSettings
        Change-feed broker settings.
    """

    base_url: str
    api_key: str = ""
    schema: str = "public"
    request_timeout: float | None = None
    rate_limit_max_keys: int = 10_000
    rate_limit_default: int = 60
    rate_limit_window_ms: int = 60_000
    feed_enabled: bool = True
    api_trace_enabled: bool = False
    mqtt: MqttSettings = dataclasses.field(default_factory=MqttSettings)

    def __post_init__(self) -> None:
        if not self.base_url:
            raise CrmConfigError("base_url is required")
        if self.rate_limit_max_keys <= 0:
            raise CrmConfigError("rate_limit_max_keys must be positive")
        if self.rate_limit_default < 0:
            raise CrmConfigError("rate_limit_default must not be negative")
        if self.rate_limit_window_ms <= 0:
            raise CrmConfigError("rate_limit_window_ms must be positive")

    @classmethod
    def from_env(cls, **overrides: Any) -> CrmConfig:
        """Create configuration from environment variables.

        Reads ``CRM_BASE_URL`` and optional ``CRM_*`` variables. Explicit
        keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        CrmConfig
            Populated configuration.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "CRM_MQTT_HOST": "host",
            "CRM_MQTT_TOPIC_PREFIX": "topic_prefix",
            "CRM_MQTT_USERNAME": "username",
            "CRM_MQTT_PASSWORD": "password",
            "CRM_MQTT_CLIENT_ID_PREFIX": "client_id_prefix",
        }
        for env_key, field_name in _ENV_MQTT_MAP.items():
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = val

        port_env = env.get("CRM_MQTT_PORT")
        if port_env is not None:
            mqtt_kwargs["port"] = int(port_env)
        keepalive_env = env.get("CRM_MQTT_KEEPALIVE")
        if keepalive_env is not None:
            mqtt_kwargs["keepalive"] = int(keepalive_env)
        tls_env = env.get("CRM_MQTT_TLS")
        if tls_env is not None:
            mqtt_kwargs["tls"] = _env_bool(tls_env, True)

        # Allow overriding broker fields via a nested dict
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttSettings):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        config_kwargs: dict[str, Any] = {"mqtt": MqttSettings(**mqtt_kwargs)}

        _ENV_CONFIG_MAP = {
            "CRM_BASE_URL": "base_url",
            "CRM_API_KEY": "api_key",
            "CRM_SCHEMA": "schema",
        }
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        timeout_env = env.get("CRM_REQUEST_TIMEOUT")
        if timeout_env is not None and "request_timeout" not in overrides:
            config_kwargs["request_timeout"] = float(timeout_env)

        max_keys_env = env.get("CRM_RATE_LIMIT_MAX_KEYS")
        if max_keys_env is not None and "rate_limit_max_keys" not in overrides:
            config_kwargs["rate_limit_max_keys"] = int(max_keys_env)

        default_env = env.get("CRM_RATE_LIMIT_DEFAULT")
        if default_env is not None and "rate_limit_default" not in overrides:
            config_kwargs["rate_limit_default"] = int(default_env)

        window_env = env.get("CRM_RATE_LIMIT_WINDOW_MS")
        if window_env is not None and "rate_limit_window_ms" not in overrides:
            config_kwargs["rate_limit_window_ms"] = int(window_env)

        if "feed_enabled" not in overrides:
            config_kwargs["feed_enabled"] = _env_bool(env.get("CRM_FEED_ENABLED"), True)

        if "api_trace_enabled" not in overrides:
            config_kwargs["api_trace_enabled"] = _env_bool(
                env.get("CRM_API_TRACE_ENABLED"),
                False,
            )

        config_kwargs.update(overrides)
        if "base_url" not in config_kwargs:
            raise CrmConfigError("CRM_BASE_URL is not set")

        return cls(**config_kwargs)
