"""MQTT change-feed transport.

Each channel is one paho-mqtt client subscribed to ``{topic_prefix}/{table}``
for every table in the channel's table set. The paho network thread decodes
JSON notifications and hands typed events to the asyncio loop with
``call_soon_threadsafe``; the loop thread is the only one that ever runs
subscriber callbacks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from crmsync._redact import redact_for_log
from crmsync.config import MqttSettings
from crmsync.exceptions import CrmTransportError, CrmValidationError
from crmsync.feed.manager import ChannelState, EventCallback, StatusCallback
from crmsync.state.events import ChangeEvent, parse_change_event

_logger = logging.getLogger(__name__)


def topic_for(prefix: str, table: str) -> str:
    return f"{prefix.rstrip('/')}/{table}"


def decode_change_payload(topic: str, payload: bytes, *, topic_prefix: str) -> ChangeEvent:
    """Decode raw MQTT payload bytes into a typed change event.

    When the payload omits ``table``, it is derived from the topic suffix.

    Raises
    ------
    CrmValidationError
        If the payload is not a JSON object or not a valid change event.
    """
    try:
        parsed = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CrmValidationError(f"Change payload on {topic} is not JSON") from exc
    if not isinstance(parsed, dict):
        raise CrmValidationError(f"Change payload on {topic} is not an object")

    if not parsed.get("table"):
        prefix = topic_prefix.rstrip("/") + "/"
        if topic.startswith(prefix):
            parsed["table"] = topic[len(prefix) :]
    return parse_change_event(parsed)


@dataclass(frozen=True)
class MqttChannelToken:
    key: frozenset[str]
    client_id: str


class MqttChannelRuntime:
    """Threaded paho-mqtt runtime for one channel."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        settings: MqttSettings,
        tables: frozenset[str],
        deliver: EventCallback,
        on_status: StatusCallback,
        client_id: str,
    ) -> None:
        self._loop = loop
        self._settings = settings
        self._topics = [topic_for(settings.topic_prefix, table) for table in sorted(tables)]
        self._deliver = deliver
        self._on_status = on_status
        self._client_id = client_id
        self._client: mqtt.Client | None = None
        self._running = False
        self._dropped = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def start(self) -> None:
        """Connect and start the network loop; blocking, run in an executor."""
        _logger.debug(
            "MQTT channel start host=%s port=%s topics=%s client_id=%s",
            self._settings.host,
            self._settings.port,
            self._topics,
            self._client_id,
        )
        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(_logger)
        if self._settings.username:
            client.username_pw_set(self._settings.username, self._settings.password)
        if self._settings.tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.is_failure:
                _logger.warning("MQTT connect failed: %s", reason_code)
                return
            for topic in self._topics:
                c.subscribe(topic, qos=1)
            if self._dropped:
                self._dropped = False
                self._loop.call_soon_threadsafe(self._on_status, ChannelState.CONNECTED, None)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                event = decode_change_payload(msg.topic, msg.payload, topic_prefix=self._settings.topic_prefix)
            except CrmValidationError:
                _logger.warning("Dropping undecodable change payload on %s", msg.topic, exc_info=True)
                return
            _logger.debug(
                "Change event table=%s op=%s rows=%s",
                event.table,
                event.operation,
                redact_for_log(event.rows()),
            )
            self._loop.call_soon_threadsafe(self._deliver, event)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if not self._running:
                return
            self._dropped = True
            error = CrmTransportError(f"MQTT channel dropped: {reason_code}", endpoint=",".join(self._topics))
            self._loop.call_soon_threadsafe(self._on_status, ChannelState.DISCONNECTED, error)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect(self._settings.host, self._settings.port, keepalive=self._settings.keepalive)
        except (OSError, ValueError) as exc:
            raise CrmTransportError(
                f"MQTT connect to {self._settings.host}:{self._settings.port} failed: {exc}",
                endpoint=",".join(self._topics),
            ) from exc
        client.loop_start()

        self._client = client
        self._running = True
        _logger.debug("MQTT network loop started client_id=%s", self._client_id)

    def stop(self) -> None:
        """Stop and disconnect the client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                client.disconnect()
        finally:
            client.loop_stop()
            _logger.debug("MQTT network loop stopped client_id=%s", self._client_id)


class MqttChangeFeed:
    """:class:`~crmsync.feed.manager.ChangeFeed` backed by one MQTT client per channel."""

    def __init__(
        self,
        settings: MqttSettings,
        *,
        runtime_factory: Callable[..., MqttChannelRuntime] = MqttChannelRuntime,
    ) -> None:
        self._settings = settings
        self._runtime_factory = runtime_factory
        self._runtimes: dict[MqttChannelToken, MqttChannelRuntime] = {}

    async def open(
        self,
        key: frozenset[str],
        deliver: EventCallback,
        on_status: StatusCallback,
    ) -> MqttChannelToken:
        loop = asyncio.get_running_loop()
        token = MqttChannelToken(
            key=key,
            client_id=f"{self._settings.client_id_prefix}_{secrets.token_hex(6)}",
        )
        runtime = self._runtime_factory(
            loop=loop,
            settings=self._settings,
            tables=key,
            deliver=deliver,
            on_status=on_status,
            client_id=token.client_id,
        )
        await loop.run_in_executor(None, runtime.start)
        self._runtimes[token] = runtime
        return token

    async def close(self, token: MqttChannelToken) -> None:
        runtime = self._runtimes.pop(token, None)
        if runtime is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, runtime.stop)
        except (OSError, RuntimeError) as exc:
            raise CrmTransportError(f"MQTT channel close failed: {exc}") from exc
