from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import pytest

from crmsync import _mqtt
from crmsync._mqtt import MqttChangeFeed, MqttChannelRuntime, MqttChannelToken, decode_change_payload, topic_for
from crmsync.config import MqttSettings
from crmsync.exceptions import CrmTransportError, CrmValidationError
from crmsync.feed.manager import ChannelState, SubscriptionManager
from crmsync.state.events import ChangeEvent, RowInserted, RowUpdated

SETTINGS = MqttSettings(host="broker.test", port=1883, tls=False, topic_prefix="crm/changes/")


def _payload(**fields: Any) -> bytes:
    return json.dumps(fields).encode("utf-8")


def test_topic_for_strips_trailing_slash() -> None:
    assert topic_for("crm/changes/", "offers") == "crm/changes/offers"


def test_decode_uses_topic_suffix_when_table_missing() -> None:
    event = decode_change_payload(
        "crm/changes/offers",
        _payload(type="UPDATE", record={"id": "1"}, old_record={"id": "1"}),
        topic_prefix="crm/changes",
    )

    assert isinstance(event, RowUpdated)
    assert event.table == "offers"


@pytest.mark.parametrize("raw", [b"\xff\xfe", b"not json", b"[1, 2]"])
def test_decode_rejects_non_object_payloads(raw: bytes) -> None:
    with pytest.raises(CrmValidationError):
        decode_change_payload("crm/changes/offers", raw, topic_prefix="crm/changes")


@dataclass
class _ReasonCode:
    is_failure: bool = False


@dataclass
class _Message:
    topic: str
    payload: bytes


class _FakePahoClient:
    instances: list[_FakePahoClient] = []

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.subscriptions: list[str] = []
        self.connected_to: tuple[str, int] | None = None
        self.loop_running = False
        self.disconnected = False
        self.on_connect: Any = None
        self.on_message: Any = None
        self.on_disconnect: Any = None
        _FakePahoClient.instances.append(self)

    def enable_logger(self, _logger: Any) -> None:
        pass

    def username_pw_set(self, _username: str, _password: str | None) -> None:
        pass

    def tls_set(self) -> None:
        pass

    def connect(self, host: str, port: int, keepalive: int) -> None:
        if host == "unreachable":
            raise OSError("connection refused")
        self.connected_to = (host, port)

    def subscribe(self, topic: str, qos: int) -> None:
        self.subscriptions.append(topic)

    def loop_start(self) -> None:
        self.loop_running = True

    def loop_stop(self) -> None:
        self.loop_running = False

    def disconnect(self) -> None:
        self.disconnected = True


@pytest.fixture
def paho(monkeypatch: pytest.MonkeyPatch) -> type[_FakePahoClient]:
    _FakePahoClient.instances = []
    monkeypatch.setattr(_mqtt.mqtt, "Client", _FakePahoClient)
    return _FakePahoClient


@pytest.mark.asyncio
async def test_runtime_subscribes_and_delivers_on_loop(paho: type[_FakePahoClient]) -> None:
    received: list[ChangeEvent] = []
    statuses: list[tuple[ChannelState, CrmTransportError | None]] = []
    runtime = MqttChannelRuntime(
        loop=asyncio.get_running_loop(),
        settings=SETTINGS,
        tables=frozenset({"offers", "customers"}),
        deliver=received.append,
        on_status=lambda s, e: statuses.append((s, e)),
        client_id="crmsync_test",
    )

    runtime.start()
    client = paho.instances[0]
    client.on_connect(client, None, None, _ReasonCode(), None)
    client.on_message(client, None, _Message("crm/changes/offers", _payload(type="INSERT", record={"id": "O1"})))
    client.on_message(client, None, _Message("crm/changes/offers", b"garbage"))
    await asyncio.sleep(0)

    assert client.connected_to == ("broker.test", 1883)
    assert client.subscriptions == ["crm/changes/customers", "crm/changes/offers"]
    assert len(received) == 1
    assert isinstance(received[0], RowInserted)
    assert statuses == []

    client.on_disconnect(client, None, None, _ReasonCode(is_failure=True), None)
    client.on_connect(client, None, None, _ReasonCode(), None)
    await asyncio.sleep(0)
    assert [s for s, _e in statuses] == [ChannelState.DISCONNECTED, ChannelState.CONNECTED]
    assert isinstance(statuses[0][1], CrmTransportError)

    runtime.stop()
    assert client.disconnected is True
    assert client.loop_running is False
    assert runtime.is_running is False


def test_runtime_connect_failure_is_transport_error(paho: type[_FakePahoClient]) -> None:
    loop = asyncio.new_event_loop()
    runtime = MqttChannelRuntime(
        loop=loop,
        settings=MqttSettings(host="unreachable", tls=False),
        tables=frozenset({"offers"}),
        deliver=lambda _e: None,
        on_status=lambda _s, _e: None,
        client_id="crmsync_test",
    )
    try:
        with pytest.raises(CrmTransportError):
            runtime.start()
    finally:
        loop.close()
    assert runtime.is_running is False


class _RecordingRuntime:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True


@pytest.mark.asyncio
async def test_feed_opens_one_runtime_per_channel() -> None:
    runtimes: list[_RecordingRuntime] = []

    def factory(**kwargs: Any) -> _RecordingRuntime:
        runtime = _RecordingRuntime(**kwargs)
        runtimes.append(runtime)
        return runtime

    feed = MqttChangeFeed(SETTINGS, runtime_factory=factory)  # type: ignore[arg-type]
    manager = SubscriptionManager(feed)
    handle = await manager.subscribe({"offers"}, lambda _e: None)
    await manager.subscribe({"offers"}, lambda _e: None)

    assert len(runtimes) == 1
    runtime = runtimes[0]
    assert runtime.started is True
    assert runtime.kwargs["tables"] == frozenset({"offers"})
    assert runtime.kwargs["client_id"].startswith("crmsync_")

    token = handle._channel.token if handle._channel is not None else None
    assert isinstance(token, MqttChannelToken)

    await manager.close()
    assert runtime.stopped is True
    # Closing an unknown token is a no-op.
    await feed.close(token)
