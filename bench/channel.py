import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Dict, Optional, Protocol, Set

from wire.messages import Delivery, Envelope, Outcome

logger = logging.getLogger(__name__)

OutcomeHandler = Callable[[Delivery, Outcome], None]
MessageHandler = Callable[[Envelope], None]


class SenderLink(Protocol):
    def sendable(self) -> bool:
        ''' Flow-control gate: whether the transport accepts another send right now '''

    def send(self, envelope: Envelope) -> Delivery:
        ''' Non-blocking; the outcome arrives later through the on_outcome handler '''


class Channel(Protocol):
    '''
    Transport capability driven by the benchmark. Implementations must invoke the
    on_outcome / on_message handlers on the event loop thread, one at a time.
    '''
    async def open(self) -> None:
        ''' Establish the connection; raises ConnectionError on failure '''

    async def open_sender(self, address: str, on_outcome: OutcomeHandler) -> SenderLink:
        ''' Return once the link is ready to accept traffic '''

    async def open_receiver(self, address: str, on_message: MessageHandler) -> None:
        ''' Return once the link is ready to receive '''

    def close(self) -> None:
        ''' Release the connection; safe to call more than once '''


class MemorySender:
    def __init__(self, channel: "MemoryChannel", address: str, on_outcome: OutcomeHandler):
        self.channel = channel
        self.address = address
        self.on_outcome = on_outcome
        self.unsettled: Set[Delivery] = set()

    def sendable(self) -> bool:
        return not self.channel.closed and len(self.unsettled) < self.channel.credit

    def send(self, envelope: Envelope) -> Delivery:
        if self.channel.closed:
            raise ConnectionError("channel is closed")
        delivery = Delivery(envelope=envelope)
        outcome = self.channel.outcome(envelope) if self.channel.outcome else Outcome.ACCEPTED
        self.unsettled.add(delivery)
        if outcome is Outcome.ACCEPTED:
            self.channel.publish(self.address, envelope)
        # settle on a later loop iteration, like an acknowledgement coming back from a broker
        self.channel.loop.call_soon(self._settle, delivery, outcome)
        return delivery

    def _settle(self, delivery: Delivery, outcome: Outcome):
        delivery.outcome = outcome
        self.unsettled.discard(delivery)
        self.on_outcome(delivery, outcome)


class MemoryChannel:
    '''
    In-process channel with one FIFO queue per address.

    - credit: maximum number of unsettled deliveries per sender (flow-control window)
    - outcome: optional callable deciding the Outcome of each envelope; everything is
      accepted when omitted. Only accepted envelopes reach the queue.
    Messages published while no receiver is attached stay queued and are delivered
    when one attaches, the way a broker keeps leftovers of an earlier run.
    '''
    def __init__(self, credit: int = 1000, outcome: Optional[Callable[[Envelope], Outcome]] = None,
                 fail_connect: bool = False):
        self.credit = credit
        self.outcome = outcome
        self.fail_connect = fail_connect
        self.queues: Dict[str, Deque[Envelope]] = {}
        self.receivers: Dict[str, MessageHandler] = {}
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        if self.fail_connect:
            raise ConnectionError("memory channel configured to refuse connections")
        self.loop = asyncio.get_running_loop()
        self.opened = True
        self.closed = False

    async def open_sender(self, address: str, on_outcome: OutcomeHandler) -> MemorySender:
        self._require_open()
        await asyncio.sleep(0)
        return MemorySender(self, address, on_outcome)

    async def open_receiver(self, address: str, on_message: MessageHandler) -> None:
        self._require_open()
        await asyncio.sleep(0)
        self.receivers[address] = on_message
        backlog = self.queues.pop(address, deque())
        for envelope in backlog:
            self.loop.call_soon(self._deliver, address, envelope)

    def publish(self, address: str, envelope: Envelope) -> None:
        ''' Put an envelope on a queue directly, bypassing any sender '''
        if address in self.receivers and self.loop is not None:
            self.loop.call_soon(self._deliver, address, envelope)
        else:
            self.queues.setdefault(address, deque()).append(envelope)

    def _deliver(self, address: str, envelope: Envelope):
        handler = self.receivers.get(address)
        if self.closed or handler is None:
            # receiver went away; keep the message for the next one
            self.queues.setdefault(address, deque()).append(envelope)
            return
        handler(envelope)

    def _require_open(self):
        if not self.opened or self.closed:
            raise ConnectionError("channel is not open")

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.receivers.clear()
        logger.debug("memory channel closed")
