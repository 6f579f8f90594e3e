import asyncio
import logging
from enum import Enum
from typing import Dict, Optional, Set

from bench.channel import Channel, SenderLink
from bench.config import RunConfig
from bench.stats import Statistics, now_ms
from wire.crypto import SecureEnvelope
from wire.messages import Delivery, Envelope, Outcome, SENT_TIME
from wire.protocol import encode_envelope

logger = logging.getLogger(__name__)


class SenderState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    SENDING = "sending"
    DRAINING = "draining"
    DONE = "done"


class Sender:
    '''
    Load generator: pushes envelopes as fast as the channel's flow control allows and
    tracks every delivery that has not been settled yet.
    '''
    def __init__(self, channel: Channel, config: RunConfig, stats: Statistics,
                 crypto: SecureEnvelope, payload: bytes, start_time: float):
        self.channel = channel
        self.config = config
        self.stats = stats
        self.crypto = crypto
        self.payload = payload
        self.start_time = start_time   # absolute run start, epoch ms
        self.link: Optional[SenderLink] = None
        self.sent_count = 0
        self.started_at: Optional[float] = None
        self.ready_time: Optional[float] = None
        self.message_size = 0
        self.pending_deliveries: Set[Delivery] = set()
        self.outcomes: Dict[Outcome, int] = {o: 0 for o in Outcome}

    @property
    def state(self) -> SenderState:
        if self.link is None:
            return SenderState.UNINITIALIZED
        if self.started_at is None:
            return SenderState.READY
        if self.sent_count < self.config.count:
            return SenderState.SENDING
        if self.pending_deliveries:
            return SenderState.DRAINING
        return SenderState.DONE

    async def setup(self) -> "Sender":
        ''' Open the sender link; waits for the channel without a timeout '''
        self.crypto.check(sign=self.config.sign, encrypt=self.config.encrypt)
        self.link = await self.channel.open_sender(self.config.address, self.on_outcome)
        self.ready_time = now_ms() - self.start_time
        logger.debug("sender ready after %.0f ms", self.ready_time)
        return self

    def create_envelope(self) -> Envelope:
        envelope = Envelope(body=self.payload, properties={SENT_TIME: int(now_ms())})
        return self.crypto.seal(envelope, self.payload, sign=self.config.sign, encrypt=self.config.encrypt)

    def send(self) -> bool:
        '''
        Send one burst. Stops at the target count or as soon as the channel reports no
        capacity, so the caller can yield and poll again.
        Output: True once the target count has been reached
        '''
        if self.started_at is None:
            self.started_at = now_ms()

        while self.sent_count < self.config.count and self.link.sendable():
            envelope = self.create_envelope()
            if not self.message_size:
                self.message_size = len(encode_envelope(envelope))
            delivery = self.link.send(envelope)
            self.pending_deliveries.add(delivery)
            self.sent_count += 1
            self.stats.record_sent()
        return self.sent_count >= self.config.count

    def on_outcome(self, delivery: Delivery, outcome: Outcome):
        ''' Accepted, rejected and released all settle the delivery; nothing is resent '''
        if delivery not in self.pending_deliveries:
            logger.debug("ignoring outcome %s for unknown or settled delivery %s", outcome.value, delivery.id)
            return
        self.pending_deliveries.remove(delivery)
        self.outcomes[outcome] += 1
        if outcome is not Outcome.ACCEPTED:
            logger.debug("delivery %s %s", delivery.id, outcome.value)

    async def drain(self, poll_interval: float = 0.1):
        ''' Suspend until every sent envelope has been settled '''
        logger.info("Pending deliveries %d", len(self.pending_deliveries))
        while self.pending_deliveries:
            await asyncio.sleep(poll_interval)
        logger.info("All messages sent")

    def metrics(self) -> dict:
        duration = (now_ms() - self.started_at) / 1000 if self.started_at else 0
        return {
            "sent_count": self.sent_count,
            "per_message_size": self.message_size,
            "sent_rate": self.sent_count / duration if duration > 0 else 0,
            "sender_ready_time": self.ready_time,
            "duration": duration,
            "accepted": self.outcomes[Outcome.ACCEPTED],
            "rejected": self.outcomes[Outcome.REJECTED],
            "released": self.outcomes[Outcome.RELEASED],
            "pending": len(self.pending_deliveries),
        }
