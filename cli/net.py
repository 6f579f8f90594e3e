import asyncio, logging, ssl, uuid
from typing import Callable, Dict, List, Optional, Tuple

import paho.mqtt.client as mqtt
from paho.mqtt.client import CallbackAPIVersion

from bench.channel import MessageHandler, OutcomeHandler
from bench.config import RunConfig
from wire.messages import Delivery, Envelope, Outcome
from wire.protocol import decode_envelope, encode_envelope

logger = logging.getLogger(__name__)

MQTT_PORT = 1883
MQTTS_PORT = 8883
QOS = 1   # at least once: every publish is acknowledged by the broker


class ServerNameContext(ssl.SSLContext):
    ''' TLS context that presents and verifies a fixed server name instead of the dialled host '''
    server_name: Optional[str] = None

    def wrap_socket(self, sock, *args, server_hostname=None, **kwargs):
        return super().wrap_socket(sock, *args, server_hostname=self.server_name or server_hostname, **kwargs)


def tls_context(config: RunConfig) -> ssl.SSLContext:
    '''
    Build the client TLS context.
    Input: config with cert/key (client authentication), optional ca and servername
    Output: ssl.SSLContext requiring a verified server certificate
    '''
    context = ServerNameContext(ssl.PROTOCOL_TLS_CLIENT)
    context.server_name = config.servername
    if config.ca:
        context.load_verify_locations(cafile=config.ca)
    else:
        context.load_default_certs()
    if config.cert:
        context.load_cert_chain(certfile=config.cert, keyfile=config.key)
    return context


class MqttSender:
    ''' Publishing side of MqttChannel; the in-flight window is the flow-control gate '''
    def __init__(self, channel: "MqttChannel", topic: str, on_outcome: OutcomeHandler):
        self.channel = channel
        self.topic = topic
        self.on_outcome = on_outcome
        self.unsettled: Dict[int, Delivery] = {}   # MQTT message id -> delivery

    def sendable(self) -> bool:
        return self.channel.connected and len(self.unsettled) < self.channel.max_inflight

    def send(self, envelope: Envelope) -> Delivery:
        info = self.channel.client.publish(self.topic, encode_envelope(envelope), qos=QOS)
        if info.rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
            raise ConnectionError(f"publish failed: {mqtt.error_string(info.rc)}")
        delivery = Delivery(envelope=envelope, tag=info.mid)
        self.unsettled[info.mid] = delivery
        return delivery

    def settle(self, mid: int, outcome: Outcome):
        delivery = self.unsettled.pop(mid, None)
        if delivery is None:
            return
        delivery.outcome = outcome
        self.on_outcome(delivery, outcome)

    def release_all(self):
        for mid in list(self.unsettled):
            self.settle(mid, Outcome.RELEASED)


class MqttChannel:
    '''
    Channel over an MQTT v5 broker using paho-mqtt.

    paho runs its network loop on a background thread; every callback is handed to the
    asyncio loop with call_soon_threadsafe so that the benchmark only ever sees events
    on the loop thread, one at a time.
    '''
    def __init__(self, config: RunConfig, client_id: Optional[str] = None):
        self.config = config
        self.host = config.host
        self.port = config.port or (MQTTS_PORT if config.tls else MQTT_PORT)
        self.max_inflight = config.max_inflight
        cid = client_id or f"brokerbench-{uuid.uuid4().hex[:8]}"
        self.client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=cid,
            protocol=mqtt.MQTTv5,
        )
        if config.tls:
            self.client.tls_set_context(tls_context(config))
        elif config.username:
            self.client.username_pw_set(config.username, config.password)
        self.client.max_inflight_messages_set(self.max_inflight)
        self.client.max_queued_messages_set(0)   # unlimited; the sender gate bounds it

        self.client.on_connect = self._on_connect
        self.client.on_connect_fail = self._on_connect_fail
        self.client.on_disconnect = self._on_disconnect
        self.client.on_publish = self._on_publish
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._on_message

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.connected = False
        self.closed = False
        self._connecting: Optional[asyncio.Future] = None
        self._subscribing: Dict[int, asyncio.Future] = {}
        self._senders: List[MqttSender] = []
        self._handlers: Dict[str, MessageHandler] = {}
        # Backlog messages until a receiver attaches its handler; then flush
        self._backlog: List[Tuple[str, bytes]] = []

    async def open(self) -> None:
        self.loop = asyncio.get_running_loop()
        self._connecting = self.loop.create_future()
        logger.info("Connecting to %s://%s:%s ...", "mqtts" if self.config.tls else "mqtt", self.host, self.port)
        try:
            self.client.connect_async(self.host, self.port)
        except (OSError, ValueError) as e:
            raise ConnectionError(f"cannot connect to {self.host}:{self.port}: {e}") from e
        self.client.loop_start()
        try:
            await self._connecting
        except ConnectionError:
            self.client.loop_stop()
            raise

    async def open_sender(self, address: str, on_outcome: OutcomeHandler) -> MqttSender:
        sender = MqttSender(self, address, on_outcome)
        self._senders.append(sender)
        return sender

    async def open_receiver(self, address: str, on_message: MessageHandler) -> None:
        future = self.loop.create_future()
        result, mid = self.client.subscribe(address, qos=QOS)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise ConnectionError(f"subscribe failed: {mqtt.error_string(result)}")
        self._subscribing[mid] = future
        await future
        self._handlers[address] = on_message
        pending, self._backlog = self._backlog, []
        for topic, payload in pending:
            self._dispatch(topic, payload)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.connected = False
        self.client.disconnect()
        self.client.loop_stop()
        for sender in self._senders:
            sender.release_all()
        self._handlers.clear()

    # -- loop side ---
    def _call(self, fn: Callable, *args):
        ''' Hand a paho callback over to the asyncio loop '''
        if self.loop is None or self.loop.is_closed():
            logger.debug("dropping %s after the event loop closed", fn.__name__)
            return
        self.loop.call_soon_threadsafe(fn, *args)

    def _connected_with(self, reason_code):
        if self._connecting is None or self._connecting.done():
            return
        if reason_code.is_failure:
            self._connecting.set_exception(ConnectionError(f"broker refused connection: {reason_code}"))
        else:
            self.connected = True
            self._connecting.set_result(None)

    def _connect_failed(self):
        if self._connecting is not None and not self._connecting.done():
            self._connecting.set_exception(ConnectionError(f"cannot connect to {self.host}:{self.port}"))

    def _disconnected(self, reason_code):
        self.connected = False
        if not self.closed:
            logger.error("Connection error: %s", reason_code)

    def _settle(self, mid: int, reason_code):
        outcome = Outcome.REJECTED if reason_code.is_failure else Outcome.ACCEPTED
        for sender in self._senders:
            if mid in sender.unsettled:
                sender.settle(mid, outcome)
                return

    def _subscribed(self, mid: int, reason_codes):
        future = self._subscribing.pop(mid, None)
        if future is None or future.done():
            return
        failures = [rc for rc in reason_codes if rc.is_failure]
        if failures:
            future.set_exception(ConnectionError(f"subscription refused: {failures[0]}"))
        else:
            future.set_result(None)

    def _dispatch(self, topic: str, payload: bytes):
        handler = next((h for sub, h in self._handlers.items() if mqtt.topic_matches_sub(sub, topic)), None)
        if handler is None:
            # No handler yet -> backlog to replay when a receiver attaches
            self._backlog.append((topic, payload))
            return
        try:
            envelope = decode_envelope(payload)
        except ValueError as e:
            logger.warning("Dropping malformed message on %s: %s", topic, e)
            return
        handler(envelope)

    # -- paho callbacks (network thread) ---
    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._call(self._connected_with, reason_code)

    def _on_connect_fail(self, client, userdata):
        self._call(self._connect_failed)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._call(self._disconnected, reason_code)

    def _on_publish(self, client, userdata, mid, reason_code, properties=None):
        self._call(self._settle, mid, reason_code)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        self._call(self._subscribed, mid, reason_code_list)

    def _on_message(self, client, userdata, msg):
        self._call(self._dispatch, msg.topic, msg.payload)
