import asyncio
import itertools
import logging
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from bench.config import RunConfig
from cli.net import MQTT_PORT, MQTTS_PORT, MqttChannel
from wire.messages import SENT_TIME, Envelope, Outcome
from wire.protocol import encode_envelope

PUBACK_OK = ReasonCode(PacketTypes.PUBACK, identifier=0)
PUBACK_ERROR = ReasonCode(PacketTypes.PUBACK, identifier=0x80)


@pytest.fixture
def channel(monkeypatch):
    channel = MqttChannel(RunConfig(address="bench", max_inflight=2), client_id="test")
    mids = itertools.count(1)
    published = []

    def publish(topic, payload, qos=0):
        published.append((topic, payload, qos))
        return SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS, mid=next(mids))

    monkeypatch.setattr(channel.client, "publish", publish)
    channel.published = published
    channel.connected = True
    return channel


def test_default_ports():
    assert MqttChannel(RunConfig(address="q")).port == MQTT_PORT
    assert MqttChannel(RunConfig(address="q", port=1999)).port == 1999


def test_tls_default_port_without_connecting(monkeypatch):
    monkeypatch.setattr(mqtt.Client, "tls_set_context", lambda self, context: None)

    assert MqttChannel(RunConfig(address="q", tls=True)).port == MQTTS_PORT


@pytest.mark.asyncio
async def test_inflight_window_gates_sending(channel):
    outcomes = []
    sender = await channel.open_sender("bench", lambda d, o: outcomes.append((d.tag, o)))

    first = sender.send(Envelope(body=b"a"))
    sender.send(Envelope(body=b"b"))

    assert not sender.sendable()
    assert [p[2] for p in channel.published] == [1, 1]

    channel._settle(first.tag, PUBACK_OK)
    assert sender.sendable()
    channel._settle(2, PUBACK_ERROR)
    channel._settle(2, PUBACK_OK)

    assert outcomes == [(1, Outcome.ACCEPTED), (2, Outcome.REJECTED)]
    assert first.settled


@pytest.mark.asyncio
async def test_close_releases_unsettled(channel, monkeypatch):
    monkeypatch.setattr(channel.client, "disconnect", lambda: None)
    outcomes = []
    sender = await channel.open_sender("bench", lambda d, o: outcomes.append(o))
    sender.send(Envelope(body=b"a"))

    channel.close()
    channel.close()

    assert outcomes == [Outcome.RELEASED]
    assert not sender.sendable()


def test_messages_before_receiver_are_backlogged(channel):
    received = []
    frame = encode_envelope(Envelope(body=b"early", properties={SENT_TIME: 1}))

    channel._dispatch("bench", frame)
    assert channel._backlog == [("bench", frame)]

    channel._handlers["bench"] = received.append
    channel._dispatch("bench", frame)

    assert received == [Envelope(body=b"early", properties={SENT_TIME: 1})]


def test_malformed_frame_is_dropped(channel, caplog):
    received = []
    channel._handlers["bench"] = received.append

    with caplog.at_level(logging.WARNING):
        channel._dispatch("bench", b"garbage")

    assert received == []
    assert "malformed" in caplog.text


@pytest.mark.asyncio
async def test_refused_connection_raises(channel):
    channel.loop = asyncio.get_running_loop()
    channel._connecting = channel.loop.create_future()

    channel._connected_with(ReasonCode(PacketTypes.CONNACK, identifier=0x87))

    with pytest.raises(ConnectionError):
        await channel._connecting
