import pytest

from bench.config import RunConfig
from wire.crypto import SecureEnvelope, rsa_generate, rsa_private_pem, rsa_public_pem


@pytest.fixture(scope="session")
def signing_key():
    return rsa_generate()


@pytest.fixture(scope="session")
def encryption_key():
    return rsa_generate()


@pytest.fixture
def crypto(signing_key, encryption_key) -> SecureEnvelope:
    return SecureEnvelope(
        signing_key=signing_key,
        verification_key=signing_key.public_key(),
        encryption_key=encryption_key.public_key(),
        decryption_key=encryption_key,
    )


@pytest.fixture
def key_files(tmp_path, signing_key, encryption_key) -> dict:
    files = {
        "sign_key": rsa_private_pem(signing_key),
        "sign_cert": rsa_public_pem(signing_key),
        "encrypt_key": rsa_public_pem(encryption_key),
        "decrypt_key": rsa_private_pem(encryption_key),
    }
    paths = {}
    for name, pem in files.items():
        path = tmp_path / f"{name}.pem"
        path.write_text(pem)
        paths[name] = str(path)
    return paths


@pytest.fixture
def make_config():
    def _make(**kwargs) -> RunConfig:
        defaults = dict(address="bench", count=100, snapshot_interval=0.05,
                        poll_interval=0.001, grace=0.01, transport="memory")
        defaults.update(kwargs)
        return RunConfig(**defaults)

    return _make
