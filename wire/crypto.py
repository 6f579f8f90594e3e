import base64, binascii, os, warnings
from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, padding as sym_padding, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from wire.messages import Envelope, ENCRYPTED_KEY, IV, SIGNATURE

AES_KEY_BYTES = 32   # AES-256
IV_BYTES = 16        # one AES block


class CryptoError(Exception):
    """Raised when a wrapped key or ciphertext cannot be turned back into plaintext."""


class MissingKeyError(KeyError):
    """Raised when an enabled feature has no key material configured."""


class ProtocolDataWarning(UserWarning):
    """An inbound envelope lacks the metadata the active configuration expects."""


# OAEP with SHA-1 digest and MGF1, matching the wrapped keys produced by the
# existing deployments.
_OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA1()),
                     algorithm=hashes.SHA1(),
                     label=None)


def rsa_generate(bits: int = 2048):
    '''
    The function generates an RSA private key.
        Input: key size in bits (default 2048)
        Output: private key object
    '''
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)

def rsa_private_pem(priv) -> str:
    ''' The function returns the PEM (PKCS#8, unencrypted) of a private key '''
    pem = priv.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption()
    )
    return pem.decode()

def rsa_public_pem(priv) -> str:
    '''
    The function returns the public key from a private key.
    Input:
        - RSA private key object
    Output:
        - PEM string of the public key
    '''
    pub = priv.public_key()
    pem = pub.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return pem.decode()

def load_private_pem(data: bytes):
    return serialization.load_pem_private_key(data, password=None)

def load_public_pem(data: bytes):
    '''
    This function loads a verification/encryption key. The PEM may hold either a bare
    public key or an X.509 certificate, in which case the certificate's key is used.
    '''
    if b"BEGIN CERTIFICATE" in data:
        return x509.load_pem_x509_certificate(data).public_key()
    return serialization.load_pem_public_key(data)

def rsa_wrap_key(pub, key_bytes: bytes) -> str:
    '''
    This function encrypts an AES key using the recipient's RSA public key.
    Input:
        - pub: recipient's RSA public key object
        - key_bytes: the AES key (binary)
    Output: Base64 string of the wrapped key
    '''
    return b64(pub.encrypt(key_bytes, _OAEP))

def rsa_unwrap_key(priv, wrapped_b64: str) -> bytes:
    '''
    This function decrypts an AES key using the recipient's RSA private key.
    Input:
        - priv: recipient's RSA private key object
        - wrapped_b64: Base64 string of the wrapped AES key
    Output: the unwrapped AES key in bytes
    '''
    return priv.decrypt(b64d(wrapped_b64), _OAEP)

def aes_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    ''' AES-256-CBC with PKCS#7 padding '''
    padder = sym_padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()

def aes_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    ''' Inverse of aes_encrypt; raises ValueError on bad padding or block size '''
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = sym_padding.PKCS7(algorithms.AES.block_size).unpadder()
    return unpadder.update(padded) + unpadder.finalize()

def b64(b: bytes) -> str:
    ''' This function encodes bytes to a Base64 string '''
    return base64.b64encode(b).decode()

def b64d(s: str) -> bytes:
    ''' This function decodes a Base64 string to bytes '''
    if not isinstance(s, str):
        raise TypeError(f"expected a Base64 string, got {type(s).__name__}")
    return base64.b64decode(s.encode(), validate=True)


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: bytes
    wrapped_key: str   # base64
    iv: str            # base64


class SecureEnvelope:
    '''
    Signs/encrypts outbound payloads and verifies/decrypts inbound ones.

    Every key is optional; an operation whose key is missing raises MissingKeyError.
    Call check() during setup so that a missing key fails the run before the first
    message instead of on it.
    '''
    def __init__(self, signing_key=None, verification_key=None,
                 encryption_key=None, decryption_key=None):
        self.signing_key = signing_key
        self.verification_key = verification_key
        self.encryption_key = encryption_key
        self.decryption_key = decryption_key

    @classmethod
    def from_files(cls, sign_key: Optional[str] = None, sign_cert: Optional[str] = None,
                   encrypt_key: Optional[str] = None, decrypt_key: Optional[str] = None):
        ''' Build from PEM file paths; paths left as None stay unconfigured '''
        def read(path):
            with open(path, "rb") as f:
                return f.read()

        return cls(
            signing_key=load_private_pem(read(sign_key)) if sign_key else None,
            verification_key=load_public_pem(read(sign_cert)) if sign_cert else None,
            encryption_key=load_public_pem(read(encrypt_key)) if encrypt_key else None,
            decryption_key=load_private_pem(read(decrypt_key)) if decrypt_key else None,
        )

    def check(self, sign: bool = False, verify: bool = False,
              encrypt: bool = False, decrypt: bool = False) -> None:
        required = [
            (sign, self.signing_key, "signing key"),
            (verify, self.verification_key, "signature verification key"),
            (encrypt, self.encryption_key, "encryption public key"),
            (decrypt, self.decryption_key, "decryption private key"),
        ]
        for wanted, key, name in required:
            if wanted and key is None:
                raise MissingKeyError(f"no {name} configured")

    def sign(self, payload: bytes) -> str:
        ''' RSA-SHA256 (PKCS#1 v1.5) signature over the raw payload, base64 encoded '''
        if self.signing_key is None:
            raise MissingKeyError("no signing key configured")
        return b64(self.signing_key.sign(payload, padding.PKCS1v15(), hashes.SHA256()))

    def verify(self, payload: bytes, signature: str) -> bool:
        if self.verification_key is None:
            raise MissingKeyError("no signature verification key configured")
        try:
            self.verification_key.verify(b64d(signature), payload, padding.PKCS1v15(), hashes.SHA256())
        except (InvalidSignature, binascii.Error, ValueError, TypeError):
            return False
        return True

    def encrypt(self, payload: bytes) -> EncryptedPayload:
        '''
        Encrypt with a fresh session key and IV. Both are generated per call; reusing
        them across messages would leak plaintext under CBC.
        '''
        if self.encryption_key is None:
            raise MissingKeyError("no encryption public key configured")
        session_key = os.urandom(AES_KEY_BYTES)
        iv = os.urandom(IV_BYTES)
        return EncryptedPayload(
            ciphertext=aes_encrypt(session_key, iv, payload),
            wrapped_key=rsa_wrap_key(self.encryption_key, session_key),
            iv=b64(iv),
        )

    def decrypt(self, ciphertext: bytes, wrapped_key: str, iv: str) -> bytes:
        if self.decryption_key is None:
            raise MissingKeyError("no decryption private key configured")
        try:
            session_key = rsa_unwrap_key(self.decryption_key, wrapped_key)
            return aes_decrypt(session_key, b64d(iv), ciphertext)
        except (ValueError, TypeError, binascii.Error) as e:
            raise CryptoError(f"cannot decrypt message: {e}") from e

    def seal(self, envelope: Envelope, payload: bytes, sign: bool = False, encrypt: bool = False) -> Envelope:
        '''
        Apply the outbound transform in place: the plaintext is signed first, then
        encrypted. The signature travels unencrypted in the metadata.
        '''
        envelope.body = payload
        if sign:
            envelope.properties[SIGNATURE] = self.sign(payload)
        if encrypt:
            sealed = self.encrypt(payload)
            envelope.body = sealed.ciphertext
            envelope.properties[ENCRYPTED_KEY] = sealed.wrapped_key
            envelope.properties[IV] = sealed.iv
        return envelope

    def decrypt_envelope(self, envelope: Envelope) -> bytes:
        '''
        Decrypt an inbound envelope using the metadata it carries.

        Envelopes without x-encrypted-key / x-iv (typically left on a shared queue by
        an earlier run) are passed through undecrypted with a ProtocolDataWarning.
        '''
        wrapped_key = envelope.properties.get(ENCRYPTED_KEY)
        iv = envelope.properties.get(IV)
        if not wrapped_key or not iv or not envelope.body:
            warnings.warn(
                "Invalid message: missing encryption fields (x-encrypted-key, x-iv or body). "
                "Test result might be incorrect. Please ensure the queue is empty before running the test.",
                ProtocolDataWarning,
                stacklevel=2,
            )
            return envelope.body
        return self.decrypt(envelope.body, wrapped_key, iv)
