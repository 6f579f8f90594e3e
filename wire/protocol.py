import base64, binascii, json
from typing import Any, Dict

from wire.crypto import b64
from wire.messages import Envelope

ENC = "utf-8"    # encoding for JSON text
DELIM = b"\n"    # frame delimiter

def encode_envelope(envelope: Envelope) -> bytes:
    '''
    The function encodes an envelope as one JSON frame terminated by a newline.
    The body is Base64 so that ciphertext survives the JSON text.
    Inputs:
        - envelope: Envelope - the envelope to encode
    Output: bytes - the frame, also used to measure the per message size
    '''
    frame = {"properties": envelope.properties, "body": b64(envelope.body)}
    return (json.dumps(frame, ensure_ascii=False, separators=(",", ":")) + "\n").encode(ENC)

def decode_envelope(data: bytes) -> Envelope:
    '''
    The function decodes one frame produced by encode_envelope.
    A trailing delimiter is optional. Malformed frames raise ValueError.
    '''
    try:
        frame: Dict[str, Any] = json.loads(data.rstrip(DELIM).decode(ENC))
    except UnicodeDecodeError as e:
        raise ValueError(f"frame is not {ENC} text") from e
    if not isinstance(frame, dict) or "body" not in frame:
        raise ValueError("frame has no body")
    properties = frame.get("properties") or {}
    if not isinstance(properties, dict):
        raise ValueError("frame properties must be an object")
    try:
        body = base64.b64decode(frame["body"], validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError("frame body is not Base64") from e
    return Envelope(body=body, properties=properties)
