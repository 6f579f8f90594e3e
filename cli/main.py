"""
Entry point of the broker benchmark.

Step 1: Parse arguments and check every referenced file exists
Step 2: Load key material and connect the channel
Step 3: Run sender and/or receiver, print the live table and the results
"""
import argparse
import asyncio
import logging
import os
import sys
import tempfile
import time
import uuid
from typing import List, Optional

from bench.channel import Channel, MemoryChannel
from bench.config import MODES, TRANSPORTS, RunConfig
from bench.controller import RunController
from wire.crypto import SecureEnvelope
from .net import MqttChannel
from .report import ConsoleReporter

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="brokerbench",
                                 description="Measure message throughput and latency through a broker")
    ap.add_argument("--host", default="localhost", help="The broker host address")
    ap.add_argument("--port", type=int, help="The broker port (1883, or 8883 with TLS)")
    ap.add_argument("--username", help="Username for the connection")
    ap.add_argument("--password", help="Password for the connection")
    ap.add_argument("--address", required=True, help="The queue / topic name")
    ap.add_argument("--count", type=int, default=10000, help="Number of messages to send")
    ap.add_argument("--mode", choices=MODES, default="both", help="Mode of operation")
    ap.add_argument("--payload", help="File for the message body")
    ap.add_argument("--transport", choices=TRANSPORTS, default="mqtt",
                    help="mqtt, or memory for an in-process dry run")
    ap.add_argument("--output", help="Output directory for the results")
    ap.add_argument("--interval", type=float, default=2.0, help="Seconds between snapshots")
    ap.add_argument("--max-inflight", type=int, default=1000, help="Maximum unacknowledged messages")
    ap.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")

    tls = ap.add_argument_group("TLS")
    tls.add_argument("-s", "--tls", action="store_true", help="Use a TLS connection")
    tls.add_argument("--key", help="The client TLS private key file")
    tls.add_argument("--cert", help="The client TLS certificate file")
    tls.add_argument("--ca", help="The CA certificate file")
    tls.add_argument("--servername", help="Server name for TLS verification")

    enc = ap.add_argument_group("Message Encryption")
    enc.add_argument("--encrypt", action="store_true", help="Enable message body encryption")
    enc.add_argument("--encrypt-key", "--encryptKey", dest="encrypt_key",
                     help="The recipient public key for message encryption")
    enc.add_argument("--decrypt-key", "--decryptKey", dest="decrypt_key",
                     help="The recipient private key for message decryption")

    sig = ap.add_argument_group("Message Signing")
    sig.add_argument("--sign", action="store_true", help="Enable message body signing")
    sig.add_argument("--sign-key", "--signKey", dest="sign_key", help="The sender private key for message signing")
    sig.add_argument("--sign-cert", "--signCert", dest="sign_cert",
                     help="The sender public key or certificate for signature verification")
    return ap

def config_from_args(args: argparse.Namespace) -> RunConfig:
    output = args.output or os.path.join(tempfile.gettempdir(), f"brokerbench-{int(time.time() * 1000)}-{uuid.uuid4()}")
    return RunConfig(
        address=args.address, host=args.host, port=args.port,
        username=args.username, password=args.password,
        count=args.count, mode=args.mode, payload=args.payload, transport=args.transport,
        tls=args.tls, key=args.key, cert=args.cert, ca=args.ca, servername=args.servername,
        encrypt=args.encrypt, encrypt_key=args.encrypt_key, decrypt_key=args.decrypt_key,
        sign=args.sign, sign_key=args.sign_key, sign_cert=args.sign_cert,
        output=output, snapshot_interval=args.interval, max_inflight=args.max_inflight,
    )

def check_files(config: RunConfig) -> List[str]:
    '''
    This function checks every file the configuration needs before anything connects.
    Output: list of error messages, empty when the configuration is usable
    '''
    errors = []

    def need(path: Optional[str], what: str):
        if not path:
            errors.append(f"{what} file is required")
        elif not os.path.exists(path):
            errors.append(f"{what} file {os.path.abspath(path)} does not exist")

    if config.count <= 0:
        errors.append("count must be a positive number")
    if config.payload:
        need(config.payload, "Payload")
    if config.tls:
        need(config.key, "TLS key")
        need(config.cert, "TLS certificate")
        if config.ca:
            need(config.ca, "CA certificate")
    if config.encrypt:
        if config.sends:
            need(config.encrypt_key, "Encryption key")
        if config.receives:
            need(config.decrypt_key, "Decryption key")
    if config.sign:
        if config.sends:
            need(config.sign_key, "Signing key")
        if config.receives:
            need(config.sign_cert, "Signing certificate")
    return errors

def build_channel(config: RunConfig) -> Channel:
    if config.transport == "memory":
        return MemoryChannel(credit=config.max_inflight)
    return MqttChannel(config)

def load_crypto(config: RunConfig) -> SecureEnvelope:
    ''' Load only the keys this mode uses '''
    return SecureEnvelope.from_files(
        sign_key=config.sign_key if config.sign and config.sends else None,
        sign_cert=config.sign_cert if config.sign and config.receives else None,
        encrypt_key=config.encrypt_key if config.encrypt and config.sends else None,
        decrypt_key=config.decrypt_key if config.encrypt and config.receives else None,
    )

def configure_logging(level: str):
    logging.basicConfig(level=level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
                        stream=sys.stderr)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    config = config_from_args(args)

    errors = check_files(config)
    if errors:
        for e in errors:
            logger.error("Error: %s", e)
        return 1

    reporter = ConsoleReporter(config)
    try:
        crypto = load_crypto(config)
        controller = RunController(config, build_channel(config), crypto, reporter=reporter)
        reporter.print_header()
        asyncio.run(controller.run())
    except KeyboardInterrupt:
        logger.error("Interrupted; results of this run are lost")
        return 130
    except (ConnectionError, KeyError, ValueError, OSError) as e:
        logger.error("Error: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
