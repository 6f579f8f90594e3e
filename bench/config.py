from dataclasses import dataclass
from typing import Optional

DEFAULT_PAYLOAD = b"Hello world"
MODES = ("sender", "receiver", "both")
TRANSPORTS = ("mqtt", "memory")

@dataclass
class RunConfig:
    ''' Settings of one benchmark run. Paths are taken as given; the CLI checks they exist. '''
    address: str                       # queue / topic name
    host: str = "localhost"
    port: Optional[int] = None         # transport default when None
    username: Optional[str] = None
    password: Optional[str] = None
    count: int = 10000
    mode: str = "both"
    payload: Optional[str] = None      # file holding the message body
    transport: str = "mqtt"

    # transport security
    tls: bool = False
    key: Optional[str] = None
    cert: Optional[str] = None
    ca: Optional[str] = None
    servername: Optional[str] = None

    # message encryption
    encrypt: bool = False
    encrypt_key: Optional[str] = None  # recipient public key
    decrypt_key: Optional[str] = None  # recipient private key

    # message signing
    sign: bool = False
    sign_key: Optional[str] = None     # sender private key
    sign_cert: Optional[str] = None    # sender public key or certificate

    output: Optional[str] = None

    snapshot_interval: float = 2.0     # seconds between snapshots
    poll_interval: float = 0.1         # pause between send bursts
    grace: float = 0.5                 # settle time before closing a send-only run
    max_inflight: int = 1000           # credit window of the transport

    @property
    def sends(self) -> bool:
        return self.mode in ("sender", "both")

    @property
    def receives(self) -> bool:
        return self.mode in ("receiver", "both")

def load_payload(path: Optional[str]) -> bytes:
    ''' Read the message body from a file, or fall back to the default greeting '''
    if not path:
        return DEFAULT_PAYLOAD
    with open(path, "rb") as f:
        return f.read()
