import csv, json, os
from typing import Optional

from bench.config import RunConfig
from bench.stats import ReceiverSnapshot, SenderSnapshot

BORDERS = {
    "both": "+--------+-------------+---------------+--------+-------------+---------------+-------------+",
    "sender": "+--------+-------------+---------------+",
    "receiver": "+--------+-------------+---------------+-------------+",
}
TITLES = {
    "both": "|            SENDER                    |                        RECEIVER                    |",
    "sender": "|            SENDER                    |",
    "receiver": "|                        RECEIVER                    |",
}
HEADERS = {
    "both": "| Time[s]| Message Cnt | Rate (m/s)    | Time(s)| Message Cnt | Rate (m/s)    |  Latency(ms)|",
    "sender": "| Time[s]| Message Cnt | Rate (m/s)    |",
    "receiver": "| Time(s)| Message Cnt | Rate (m/s)    |  Latency(ms)|",
}


def byte_size(n: int) -> str:
    ''' Human readable size using decimal units, e.g. 1500 -> "1.5 kB" '''
    value = float(n)
    for unit in ("B", "kB", "MB", "GB"):
        if value < 1000 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1000

def pad(label: str, width: int = 50) -> str:
    return label.ljust(width, ".")


class ConsoleReporter:
    ''' Prints the live snapshot table and the final results; saves them when an output path is set '''
    def __init__(self, config: RunConfig):
        self.config = config
        self.mode = config.mode

    def print_header(self):
        print("\n")
        border = BORDERS[self.mode]
        for line in (border, TITLES[self.mode], border, HEADERS[self.mode], border):
            print(line)

    def on_snapshot(self, sender: SenderSnapshot, receiver: ReceiverSnapshot):
        s = f"| {sender.elapsed:6.1f} | {sender.sent:11d} | {sender.rate:13.0f} |"
        r = f"| {receiver.elapsed:6.1f} | {receiver.received:11d} | {receiver.rate:13.0f} | {receiver.avg_latency:11.2f} |"
        if self.mode == "both":
            print(s + r[1:])
        elif self.mode == "sender":
            print(s)
        else:
            print(r)

    def on_finish(self, metrics: dict):
        print(BORDERS[self.mode])
        print_results(self.config, metrics)
        if self.config.output:
            save_results(self.config.output, metrics)


def print_results(config: RunConfig, metrics: dict):
    print("\n--- Results ---")

    print("\nConfiguration:")
    print(f"{pad('Host:')} {config.host}")
    print(f"{pad('Port:')} {config.port if config.port else 'default'}")
    print(f"{pad('Transport:')} {config.transport}")
    print(f"{pad('TLS:')} {'enabled' if config.tls else 'disabled'}")
    print(f"{pad('Mode:')} {config.mode}")
    print(f"{pad('Queue:')} {config.address}")
    print(f"{pad('Message Signing:')} {'enabled' if config.sign else 'disabled'}")
    print(f"{pad('Message Encryption:')} {'enabled' if config.encrypt else 'disabled'}")
    print(f"{pad('Payload File:')} {config.payload}")
    print(f"{pad('Output File:')} {config.output}")

    summary = metrics["summary"]
    print(f"{pad('Body Payload Size:')} {byte_size(summary['payload_size'])}")
    print(f"\n{pad('Connection opened:')} {_ms(metrics['connection']['connection_opened_time'])}")

    sender = metrics.get("sender")
    if sender:
        print("\nSender:")
        print(f"{pad('Sender ready:')} {_ms(sender['sender_ready_time'])}")
        print(f"{pad('Sent:')} {sender['sent_count']}")
        print(f"{pad('Rate:')} {sender['sent_rate']:.0f} msg / sec")
        print(f"{pad('Per Message Size:')} {sender['per_message_size']} bytes")
        print(f"{pad('Accepted / Rejected / Released:')} "
              f"{sender['accepted']} / {sender['rejected']} / {sender['released']}")

    receiver = metrics.get("receiver")
    if receiver:
        print("\nReceiver:")
        print(f"{pad('Receiver ready:')} {_ms(receiver['receiver_ready_time'])}")
        print(f"{pad('Received:')} {receiver['received_count']}")
        print(f"{pad('Duration:')} {receiver['duration']:.2f} seconds")
        print(f"{pad('Per Message Size:')} {receiver['per_message_size']} bytes")
        print(f"{pad('Throughput:')} {metrics['throughput']:.2f} msg / sec")
        if receiver["stale_count"] or receiver["decrypt_failures"] or receiver["invalid_signatures"]:
            print(f"{pad('WARNING stale / undecryptable / bad signature:')} "
                  f"{receiver['stale_count']} / {receiver['decrypt_failures']} / {receiver['invalid_signatures']}")

        latency = summary["latency"]
        print("\nLatency Statistics:")
        print(f"{pad('Average:')} {latency['avg']:.2f} ms")
        print(f"{pad('Min:')} {latency['min']:.0f} ms")
        print(f"{pad('Max:')} {latency['max']:.0f} ms")
        print(f"{pad('95th percentile:')} {latency['p95']:.0f} ms")

        for title, key in (("Signature Verification", "signature"), ("Decryption", "decryption")):
            timing = summary[key]
            if timing["max"]:
                print(f"\n{title}:")
                print(f"{pad('Average:')} {timing['avg']:.3f} ms")
                print(f"{pad('Min:')} {timing['min']:.3f} ms")
                print(f"{pad('Max:')} {timing['max']:.3f} ms")

def _ms(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.0f} ms"


def save_results(pathname: str, metrics: dict):
    '''
    Persist one run under pathname (created if needed):
        - sender_snapshots.csv: timestamp,sent,rate
        - receiver_snapshots.csv: timestamp,received,rate,avg_latency
        - summary_metrics.json and full_metrics.json
    '''
    os.makedirs(pathname, exist_ok=True)

    with open(os.path.join(pathname, "sender_snapshots.csv"), "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["timestamp", "sent", "rate"])
        for s in metrics["sender_snapshots"]:
            writer.writerow([int(s["timestamp"]), s["sent"], s["rate"]])

    with open(os.path.join(pathname, "receiver_snapshots.csv"), "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["timestamp", "received", "rate", "avg_latency"])
        for s in metrics["receiver_snapshots"]:
            writer.writerow([int(s["timestamp"]), s["received"], s["rate"], s["avg_latency"]])

    with open(os.path.join(pathname, "summary_metrics.json"), "w") as f:
        json.dump(metrics["summary"], f, indent=2)

    with open(os.path.join(pathname, "full_metrics.json"), "w") as f:
        json.dump(metrics, f, indent=2)

    print(f"\nResults saved to {pathname}")
