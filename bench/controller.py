import asyncio
import logging
from dataclasses import asdict
from typing import Optional, Protocol

from bench.channel import Channel
from bench.config import RunConfig, load_payload
from bench.receiver import Receiver
from bench.sender import Sender
from bench.stats import ReceiverSnapshot, SenderSnapshot, Statistics, now_ms
from wire.crypto import SecureEnvelope

logger = logging.getLogger(__name__)


class Reporter(Protocol):
    def on_snapshot(self, sender: SenderSnapshot, receiver: ReceiverSnapshot) -> None: ...

    def on_finish(self, metrics: dict) -> None: ...


class RunController:
    '''
    Owns one benchmark run: opens the channel, starts the snapshot timer, drives the
    sender and waits for the receiver (or, send-only, for the pending deliveries to
    drain), then finalizes exactly once.
    '''
    def __init__(self, config: RunConfig, channel: Channel, crypto: SecureEnvelope,
                 reporter: Optional[Reporter] = None, payload: Optional[bytes] = None):
        self.config = config
        self.channel = channel
        self.crypto = crypto
        self.reporter = reporter
        self.payload = load_payload(config.payload) if payload is None else payload
        self.stats = Statistics()
        self.start_time = now_ms()
        self.connection_opened_time: Optional[float] = None
        self.sender: Optional[Sender] = None
        self.receiver: Optional[Receiver] = None
        self.metrics: Optional[dict] = None
        self._ticker: Optional[asyncio.Task] = None
        self._finished: Optional[asyncio.Event] = None
        self._finalized = False
        self._error: Optional[BaseException] = None

    async def run(self) -> dict:
        self._finished = asyncio.Event()
        self.start_time = now_ms()
        if self.config.sends:
            self.stats.payload_size = len(self.payload)

        await self.channel.open()
        self.connection_opened_time = now_ms() - self.start_time
        logger.debug("connection opened after %.0f ms", self.connection_opened_time)
        self._ticker = asyncio.create_task(self._tick())

        try:
            if self.config.sends:
                self.sender = Sender(self.channel, self.config, self.stats, self.crypto,
                                     self.payload, self.start_time)
                await self.sender.setup()

            if self.config.receives:
                self.receiver = Receiver(self.channel, self.config, self.stats, self.crypto,
                                         self.start_time, on_complete=self.finalize)
                await self.receiver.setup()

            if self.sender:
                # yield between bursts so the transport can settle deliveries and return credit
                while not self._finalized and not self.sender.send():
                    await asyncio.sleep(self.config.poll_interval)

            if not self.receiver:
                await self.sender.drain(self.config.poll_interval)
                await asyncio.sleep(self.config.grace)
                self.finalize()
        except BaseException:
            self._stop()
            raise

        await self._finished.wait()
        if self._error is not None:
            raise self._error
        return self.metrics

    async def _tick(self):
        while True:
            await asyncio.sleep(self.config.snapshot_interval)
            self.snapshot()

    def snapshot(self):
        sender = self.stats.snapshot_sender(self.start_time)
        receiver = self.stats.snapshot_receiver(self.start_time)
        if self.reporter:
            self.reporter.on_snapshot(sender, receiver)

    def finalize(self):
        ''' Stop the timer, close the channel, compute the summary and report it; runs once '''
        if self._finalized:
            return
        self._finalized = True
        self._stop()
        try:
            self.metrics = self.collect_metrics()
            if self.reporter:
                self.reporter.on_finish(self.metrics)
        except Exception as e:
            # may run inside a channel callback; run() raises it instead
            self._error = e
        finally:
            if self._finished is not None:
                self._finished.set()

    def _stop(self):
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        self.channel.close()

    def collect_metrics(self) -> dict:
        metrics = {
            "connection": {"connection_opened_time": self.connection_opened_time},
            "sender": self.sender.metrics() if self.sender else None,
            "receiver": self.receiver.metrics() if self.receiver else None,
            "summary": self.stats.summary().to_dict(),
            "sender_snapshots": [asdict(s) for s in self.stats.sender_snapshots],
            "receiver_snapshots": [asdict(s) for s in self.stats.receiver_snapshots],
        }
        if self.receiver:
            duration = metrics["receiver"]["duration"]
            metrics["throughput"] = metrics["receiver"]["received_count"] / duration if duration > 0 else 0
        return metrics
