from dataclasses import dataclass, field
from enum import Enum
from itertools import count
from typing import Optional, Dict, Any

# Metadata keys; the names are shared with existing deployments and must not change.
SENT_TIME = "sent_time"                 # int, epoch milliseconds
SIGNATURE = "x-digital-signature"       # base64
ENCRYPTED_KEY = "x-encrypted-key"       # base64, RSA-OAEP wrapped AES key
IV = "x-iv"                             # base64, 16 bytes decoded


@dataclass
class Envelope:
    body: bytes                                              # plaintext or ciphertext
    properties: Dict[str, Any] = field(default_factory=dict)  # metadata, never encrypted

    @property
    def sent_time(self) -> Optional[int]:
        return self.properties.get(SENT_TIME)

    @property
    def signature(self) -> Optional[str]:
        return self.properties.get(SIGNATURE)


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RELEASED = "released"


_delivery_ids = count(1)

# eq=False keeps identity hashing so deliveries can live in a set.
@dataclass(eq=False)
class Delivery:
    envelope: Envelope
    tag: Any = None                    # transport specific handle (e.g. an MQTT message id)
    outcome: Optional[Outcome] = None
    id: int = field(default_factory=lambda: next(_delivery_ids))

    @property
    def settled(self) -> bool:
        return self.outcome is not None
