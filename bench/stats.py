import math
import time
from dataclasses import dataclass, asdict
from threading import Lock
from typing import List, Optional, Sequence

def now_ms() -> float:
    return time.time() * 1000

@dataclass(frozen=True)
class SenderSnapshot:
    timestamp: float    # epoch ms
    elapsed: float      # seconds since run start
    sent: int           # messages sent since the previous snapshot
    rate: float

@dataclass(frozen=True)
class ReceiverSnapshot:
    timestamp: float
    elapsed: float
    received: int
    rate: float
    avg_latency: float

@dataclass(frozen=True)
class Timing:
    min: float = 0
    avg: float = 0
    max: float = 0

@dataclass(frozen=True)
class LatencyTiming(Timing):
    p95: float = 0

@dataclass(frozen=True)
class Summary:
    payload_size: int
    latency: LatencyTiming
    signature: Timing
    decryption: Timing

    def to_dict(self) -> dict:
        return asdict(self)


def percentile(values: Sequence[float], p: float) -> float:
    '''
    Nearest-rank percentile: sort ascending and take index ceil(p/100 * N) - 1.
    No interpolation. Returns 0 for an empty sequence.
    '''
    if not values:
        return 0
    ordered = sorted(values)
    idx = math.ceil((p / 100) * len(ordered)) - 1
    return ordered[max(idx, 0)]

def _average(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0

def _timing(values: Sequence[float]) -> Timing:
    if not values:
        return Timing()
    return Timing(min=min(values), avg=_average(values), max=max(values))


class Statistics:
    '''
    Shared accumulation point for sender and receiver samples.

    The event loop already serializes every caller; the locks keep the counters and
    sample lists consistent if a transport ever calls in from its own thread.
    '''
    def __init__(self):
        self.counter_lock = Lock()   # guards counters and snapshot histories
        self.sample_lock = Lock()    # guards the sample lists
        self.sent_count = 0
        self.received_count = 0
        self.snapshot_sent_count = 0
        self.snapshot_received_count = 0
        self.payload_size = 0
        self.latencies: List[float] = []
        self.signature_times: List[float] = []
        self.decryption_times: List[float] = []
        self.sender_snapshots: List[SenderSnapshot] = []
        self.receiver_snapshots: List[ReceiverSnapshot] = []

    def record_sent(self):
        with self.counter_lock:
            self.sent_count += 1
            self.snapshot_sent_count += 1

    def record_received(self):
        with self.counter_lock:
            self.received_count += 1
            self.snapshot_received_count += 1

    def record_latency(self, ms: float):
        with self.sample_lock:
            self.latencies.append(ms)

    def record_signature_time(self, ms: float):
        with self.sample_lock:
            self.signature_times.append(ms)

    def record_decryption_time(self, ms: float):
        with self.sample_lock:
            self.decryption_times.append(ms)

    def average_latency(self) -> float:
        with self.sample_lock:
            return _average(self.latencies)

    def snapshot_sender(self, start_time: float, now: Optional[float] = None) -> SenderSnapshot:
        '''
        Close the current window of the sender side.
        The rate divides the window's count by the time elapsed since the run started,
        not by the window length, which gives a smoothed cumulative rate.
        Input:
            - start_time: absolute run start, epoch ms
            - now: snapshot time, epoch ms (defaults to the current time)
        '''
        now = now_ms() if now is None else now
        elapsed = (now - start_time) / 1000
        with self.counter_lock:
            sent = self.snapshot_sent_count
            snapshot = SenderSnapshot(timestamp=now, elapsed=elapsed, sent=sent,
                                      rate=sent / elapsed if elapsed > 0 else 0)
            self.sender_snapshots.append(snapshot)
            self.snapshot_sent_count = 0
        return snapshot

    def snapshot_receiver(self, start_time: float, now: Optional[float] = None) -> ReceiverSnapshot:
        ''' Receiver counterpart of snapshot_sender; also carries the running average latency '''
        now = now_ms() if now is None else now
        elapsed = (now - start_time) / 1000
        avg_latency = self.average_latency()
        with self.counter_lock:
            received = self.snapshot_received_count
            snapshot = ReceiverSnapshot(timestamp=now, elapsed=elapsed, received=received,
                                        rate=received / elapsed if elapsed > 0 else 0,
                                        avg_latency=avg_latency)
            self.receiver_snapshots.append(snapshot)
            self.snapshot_received_count = 0
        return snapshot

    def summary(self) -> Summary:
        with self.sample_lock:
            latencies = list(self.latencies)
            signature_times = list(self.signature_times)
            decryption_times = list(self.decryption_times)
        latency = _timing(latencies)
        return Summary(
            payload_size=self.payload_size,
            latency=LatencyTiming(min=latency.min, avg=latency.avg, max=latency.max,
                                  p95=percentile(latencies, 95)),
            signature=_timing(signature_times),
            decryption=_timing(decryption_times),
        )
