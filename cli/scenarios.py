"""
Run the small-payload benchmark scenarios one after another.

Each scenario runs as its own child process so a hung or crashed run cannot leak into
the next one. Connection details come from SELF_TEST_* variables, optionally read
from a .env file.
"""
import logging
import os
import subprocess
import sys
import tempfile
import time
import uuid
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class Scenario:
    name: str
    description: str
    args: List[str]
    disabled: bool = False


def _output(slug: str, env: Mapping[str, str]) -> str:
    name = f"brokerbench-{slug}-{int(time.time() * 1000)}-{env.get('SELF_TEST_HOST')}-{uuid.uuid4()}"
    return os.path.join(tempfile.gettempdir(), name)

def small_payload_scenarios(env: Mapping[str, str]) -> List[Scenario]:
    '''
    The four standard scenarios, from plain connection to TLS with signing and encryption.
    Input: env - mapping holding the SELF_TEST_* settings
    '''
    def opt(name: str, var: str) -> List[str]:
        value = env.get(var)
        return [name, value] if value else []

    common = (opt("--host", "SELF_TEST_HOST") + opt("--address", "SELF_TEST_QUEUE")
              + opt("--count", "SELF_TEST_SMALL_MESSAGE_COUNT") + opt("--payload", "SELF_TEST_SMALL_PAYLOAD_FILE"))
    plain = (opt("--port", "SELF_TEST_PORT") + opt("--username", "SELF_TEST_USERNAME")
             + opt("--password", "SELF_TEST_PASSWORD"))
    tls = (["--tls"] + opt("--port", "SELF_TEST_TLS_PORT") + opt("--key", "SELF_TEST_TLS_KEY_PATH")
           + opt("--cert", "SELF_TEST_TLS_CERT_PATH") + opt("--ca", "SELF_TEST_TLS_CA_PATH")
           + opt("--servername", "SELF_TEST_TLS_SERVER_NAME"))
    sign = (["--sign"] + opt("--sign-key", "SELF_TEST_SIGN_PRIVATE_KEY_PATH")
            + opt("--sign-cert", "SELF_TEST_SIGN_PUBLIC_KEY_PATH"))
    encrypt = (["--encrypt"] + opt("--encrypt-key", "SELF_TEST_ENCRYPT_PUBLIC_KEY_PATH")
               + opt("--decrypt-key", "SELF_TEST_ENCRYPT_PRIVATE_KEY_PATH"))

    return [
        Scenario("Small Payload - No TLS",
                 "Measurement of message exchange time without TLS using a small message payload",
                 common + plain + ["--output", _output("small-no-tls", env)]),
        Scenario("Small Payload - TLS",
                 "Measurement of message exchange time with TLS and certificate authentication "
                 "using a small message payload",
                 common + tls + ["--output", _output("small-tls", env)]),
        Scenario("Small Payload - TLS - Digital Signature",
                 "Measurement of message exchange time with TLS and certificate authentication "
                 "using a small message payload with digital signature",
                 common + tls + sign + ["--output", _output("small-tls-signed", env)]),
        Scenario("Small Payload - TLS - Digital Signature and Encryption",
                 "Measurement of message exchange time with TLS and certificate authentication "
                 "using a small message payload with digital signature and encryption",
                 common + tls + sign + encrypt + ["--output", _output("small-tls-signed-encrypted", env)]),
    ]

def run_scenario(scenario: Scenario, python: Optional[str] = None) -> int:
    ''' Run one scenario in both mode and wait for it; returns the child's exit code '''
    cmd = [python or sys.executable, "-m", "cli.main", *scenario.args, "--mode", "both"]
    print(f"\nRunning scenario: {scenario.name}")
    print(f"Description: {scenario.description}")
    logger.debug("Arguments: %s", " ".join(cmd))
    completed = subprocess.run(cmd)
    print(f"\nScenario {scenario.name} finished with exit code {completed.returncode}")
    return completed.returncode

def run_all(scenarios: List[Scenario]) -> Dict[str, int]:
    results = {}
    for scenario in scenarios:
        if scenario.disabled:
            logger.debug("Skipping scenario: %s", scenario.name)
            continue
        results[scenario.name] = run_scenario(scenario)
    return results

def main() -> int:
    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    results = run_all(small_payload_scenarios(os.environ))
    print("\nAll scenarios completed")
    return 0 if all(code == 0 for code in results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
