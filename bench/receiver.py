import logging
import time
import warnings
from typing import Callable, List, Optional, Tuple

from bench.channel import Channel
from bench.config import RunConfig
from bench.stats import Statistics, now_ms
from wire.crypto import CryptoError, ProtocolDataWarning, SecureEnvelope
from wire.messages import Envelope
from wire.protocol import encode_envelope

logger = logging.getLogger(__name__)

MISSING_SIGNATURE = ("Invalid message: x-digital-signature not found while signing is enabled. "
                     "Test result might be incorrect. Please ensure the queue is empty before running the test.")
MALFORMED_SIGNATURE = "Invalid message: x-digital-signature is not a Base64 string. Test result might be incorrect."
MALFORMED_SENT_TIME = "Invalid message: sent_time %r is not epoch milliseconds. Test result might be incorrect."


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class Receiver:
    '''
    Sample collector: consumes envelopes, records end-to-end latency and the cost of
    decryption/verification, and calls on_complete once the target count arrives.
    Messages are independent trials, so a bad one is logged and counted, never fatal.
    '''
    def __init__(self, channel: Channel, config: RunConfig, stats: Statistics,
                 crypto: SecureEnvelope, start_time: float,
                 on_complete: Optional[Callable[[], None]] = None):
        self.channel = channel
        self.config = config
        self.stats = stats
        self.crypto = crypto
        self.start_time = start_time
        self.on_complete = on_complete
        self.received_count = 0
        self.started_at: Optional[float] = None
        self.ready_time: Optional[float] = None
        self.message_size = 0
        self.stale_count = 0          # envelopes missing metadata the configuration expects
        self.decrypt_failures = 0
        self.invalid_signatures = 0
        self.completed = False

    async def setup(self) -> "Receiver":
        self.crypto.check(verify=self.config.sign, decrypt=self.config.encrypt)
        await self.channel.open_receiver(self.config.address, self.handle_envelope)
        self.ready_time = now_ms() - self.start_time
        logger.debug("receiver ready after %.0f ms", self.ready_time)
        return self

    def handle_envelope(self, envelope: Envelope):
        received_at = now_ms()
        if self.started_at is None:
            self.started_at = received_at

        if not self.message_size:
            self.message_size = len(encode_envelope(envelope))

        problems: List[str] = []
        sent_time = envelope.sent_time
        if isinstance(sent_time, bool) or not isinstance(sent_time, (int, type(None))):
            problems.append(MALFORMED_SENT_TIME % (sent_time,))
        elif sent_time:
            self.stats.record_latency(received_at - sent_time)

        body = envelope.body
        if self.config.encrypt:
            body, warned = self._decrypt(envelope)
            problems.extend(warned)

        if self.config.sign:
            signature = envelope.signature
            if signature is None:
                problems.append(MISSING_SIGNATURE)
            elif not isinstance(signature, str):
                problems.append(MALFORMED_SIGNATURE)
            elif body is not None:
                started = time.perf_counter()
                valid = self.crypto.verify(body, signature)
                self.stats.record_signature_time(_elapsed_ms(started))
                if not valid:
                    self.invalid_signatures += 1
                    logger.error("Invalid signature for message sent at %s", sent_time)

        if problems:
            self.stale_count += 1
            for problem in problems:
                logger.warning(problem)

        self.received_count += 1
        self.stats.record_received()

        if self.received_count == self.config.count and not self.completed:
            self.completed = True
            if self.on_complete:
                self.on_complete()

    def _decrypt(self, envelope: Envelope) -> Tuple[Optional[bytes], List[str]]:
        ''' Decrypt and time it. Returns the body (None if undecryptable) and any data warnings '''
        body = None
        started = time.perf_counter()
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ProtocolDataWarning)
            try:
                body = self.crypto.decrypt_envelope(envelope)
            except CryptoError as e:
                self.decrypt_failures += 1
                logger.error("Invalid message: %s", e)
        self.stats.record_decryption_time(_elapsed_ms(started))
        return body, [str(w.message) for w in caught if issubclass(w.category, ProtocolDataWarning)]

    def metrics(self) -> dict:
        return {
            "received_count": self.received_count,
            "receiver_ready_time": self.ready_time,
            "per_message_size": self.message_size,
            "duration": (now_ms() - self.started_at) / 1000 if self.started_at else 0,
            "stale_count": self.stale_count,
            "decrypt_failures": self.decrypt_failures,
            "invalid_signatures": self.invalid_signatures,
        }
