"""
Secret generators — produce fresh key material as bytes.

Each generator is a zero-argument callable returning bytes, so the
secret manager can persist whatever it returns without interpreting it.
"""

from __future__ import annotations

import secrets as _secrets
import time
from collections.abc import Callable

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

Generator = Callable[[], bytes]


def random_hex(nbytes: int = 32) -> Generator:
    """Hex string of ``nbytes`` random bytes (like ``openssl rand -hex``)."""

    def _generate() -> bytes:
        return _secrets.token_hex(nbytes).encode("ascii")

    return _generate


def token(nbytes: int = 32) -> Generator:
    """URL-safe random token."""

    def _generate() -> bytes:
        return _secrets.token_urlsafe(nbytes).encode("ascii")

    return _generate


def rsa_private_key(bits: int = 2048) -> Generator:
    """PEM-encoded RSA private key (PKCS#8, unencrypted)."""

    def _generate() -> bytes:
        key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
        return key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    return _generate


def key_id(prefix: str) -> Generator:
    """Key identifier ``<prefix>-<unix time>``, no trailing newline."""

    def _generate() -> bytes:
        return f"{prefix}-{int(time.time())}".encode("ascii")

    return _generate


def public_key_pem(private_pem: bytes) -> bytes:
    """Derive the SubjectPublicKeyInfo PEM from a private key PEM."""
    key = serialization.load_pem_private_key(private_pem, password=None)
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


GENERATORS: dict[str, Callable[..., Generator]] = {
    "hex": random_hex,
    "token": token,
    "rsa": rsa_private_key,
    "key_id": key_id,
}


def make_generator(gen_type: str, **options: object) -> Generator:
    """Look up a generator factory by name and configure it.

    Raises:
        ValueError: For an unknown generator type.
    """
    factory = GENERATORS.get(gen_type)
    if factory is None:
        raise ValueError(
            f"Unknown generator type '{gen_type}'. Valid: {', '.join(sorted(GENERATORS))}"
        )
    return factory(**options)
