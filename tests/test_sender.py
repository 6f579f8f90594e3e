import asyncio

import pytest

from bench.channel import MemoryChannel
from bench.sender import Sender, SenderState
from bench.stats import Statistics, now_ms
from wire.crypto import MissingKeyError, SecureEnvelope
from wire.messages import ENCRYPTED_KEY, IV, SIGNATURE, Delivery, Envelope, Outcome


async def make_sender(config, channel=None, crypto=None, payload=b"Hello world"):
    channel = channel or MemoryChannel()
    await channel.open()
    sender = Sender(channel, config, Statistics(), crypto or SecureEnvelope(), payload, now_ms())
    return sender


async def settle():
    # let the channel's acknowledgements run
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_state_machine_reaches_done(make_config):
    sender = await make_sender(make_config(count=100))
    assert sender.state is SenderState.UNINITIALIZED

    await sender.setup()
    assert sender.state is SenderState.READY
    assert sender.ready_time is not None

    assert sender.send() is True
    assert sender.state is SenderState.DRAINING
    assert len(sender.pending_deliveries) == 100

    await settle()
    assert sender.state is SenderState.DONE
    assert sender.pending_deliveries == set()
    assert sender.outcomes[Outcome.ACCEPTED] == 100


@pytest.mark.asyncio
async def test_burst_stops_at_flow_control_gate(make_config):
    sender = await make_sender(make_config(count=25), channel=MemoryChannel(credit=10))
    await sender.setup()

    assert sender.send() is False
    assert sender.sent_count == 10
    assert sender.state is SenderState.SENDING

    await settle()
    assert sender.send() is False
    assert sender.sent_count == 20
    await settle()
    assert sender.send() is True
    assert sender.sent_count == 25
    assert sender.stats.sent_count == 25


@pytest.mark.asyncio
async def test_pending_set_tracks_sent_minus_outcomes(make_config):
    outcomes = iter([Outcome.ACCEPTED, Outcome.REJECTED, Outcome.RELEASED] * 10)
    channel = MemoryChannel(outcome=lambda envelope: next(outcomes))
    sender = await make_sender(make_config(count=30), channel=channel)
    await sender.setup()

    sender.send()
    observed = sum(sender.outcomes.values())
    assert len(sender.pending_deliveries) == sender.sent_count - observed

    await settle()
    assert sender.pending_deliveries == set()
    assert sender.outcomes == {Outcome.ACCEPTED: 10, Outcome.REJECTED: 10, Outcome.RELEASED: 10}
    # rejected and released messages are not resent
    assert sender.sent_count == 30


@pytest.mark.asyncio
async def test_outcome_is_removed_only_once(make_config):
    sender = await make_sender(make_config(count=1))
    await sender.setup()
    sender.send()
    (delivery,) = sender.pending_deliveries
    await settle()

    sender.on_outcome(delivery, Outcome.REJECTED)
    sender.on_outcome(Delivery(envelope=Envelope(body=b"")), Outcome.ACCEPTED)

    assert sender.outcomes == {Outcome.ACCEPTED: 1, Outcome.REJECTED: 0, Outcome.RELEASED: 0}
    assert len(sender.pending_deliveries) == 0


@pytest.mark.asyncio
async def test_drain_waits_for_outcomes(make_config):
    sender = await make_sender(make_config(count=5))
    await sender.setup()
    sender.send()

    await asyncio.wait_for(sender.drain(poll_interval=0.001), timeout=1)

    assert sender.state is SenderState.DONE


@pytest.mark.asyncio
async def test_envelope_carries_metadata(make_config, crypto):
    sender = await make_sender(make_config(count=1, sign=True, encrypt=True), crypto=crypto)
    await sender.setup()
    before = int(now_ms())

    envelope = sender.create_envelope()

    assert before <= envelope.sent_time <= int(now_ms())
    assert isinstance(envelope.sent_time, int)
    assert envelope.body != b"Hello world"
    assert {SIGNATURE, ENCRYPTED_KEY, IV} <= set(envelope.properties)
    assert crypto.decrypt_envelope(envelope) == b"Hello world"


@pytest.mark.asyncio
async def test_plain_envelope_has_only_send_time(make_config):
    sender = await make_sender(make_config(count=1))
    await sender.setup()

    envelope = sender.create_envelope()

    assert envelope.body == b"Hello world"
    assert list(envelope.properties) == ["sent_time"]


@pytest.mark.asyncio
async def test_setup_fails_without_signing_key(make_config):
    sender = await make_sender(make_config(sign=True))

    with pytest.raises(MissingKeyError):
        await sender.setup()


@pytest.mark.asyncio
async def test_message_size_measured_once(make_config):
    sender = await make_sender(make_config(count=3))
    await sender.setup()
    sender.send()

    assert sender.message_size > len(b"Hello world")
    assert sender.metrics()["per_message_size"] == sender.message_size
