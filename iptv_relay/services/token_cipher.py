"""
Reversible masking of upstream URLs.

Tokens are hex strings laid out as ``iv || ciphertext || tag``: AES-256-CBC
with a fresh IV per call, then a truncated HMAC-SHA256 over ``iv ||
ciphertext``. Both keys are derived once with scrypt from the configured
secret.
"""
import logging
import os
import re
from typing import Optional

from cryptography.hazmat.primitives import constant_time, hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from iptv_relay.config import Settings
from iptv_relay.errors import ConfigurationError, InvalidToken

logger = logging.getLogger(__name__)

IV_LENGTH = 16
BLOCK_LENGTH = 16
TAG_LENGTH = 16

_HEX_PATTERN = re.compile(r"[0-9a-fA-F]+")


def derive_keys(secret: str, salt: str) -> tuple[bytes, bytes]:
    """Derive (encryption key, MAC key) from a configured secret."""
    kdf = Scrypt(salt=salt.encode(), length=64, n=2**14, r=8, p=1)
    material = kdf.derive(secret.encode())
    return material[:32], material[32:]


class TokenCipher:
    """Encode upstream URLs into opaque stream tokens and back."""

    def __init__(self, enc_key: bytes, mac_key: bytes):
        if len(enc_key) != 32 or len(mac_key) != 32:
            raise ValueError("TokenCipher needs two 32-byte keys")
        self._enc_key = enc_key
        self._mac_key = mac_key

    @classmethod
    def from_secret(cls, secret: str, salt: str = "salt") -> "TokenCipher":
        return cls(*derive_keys(secret, salt))

    @classmethod
    def ephemeral(cls) -> "TokenCipher":
        return cls(os.urandom(32), os.urandom(32))

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCipher":
        """
        Build the process-wide cipher.

        Without ``encryption_key`` production refuses to start; any other
        environment gets a random key, so tokens die with the process.
        """
        secret: Optional[str] = settings.encryption_key
        if secret:
            if len(secret) < 32:
                logger.warning("IPTV_ENCRYPTION_KEY is shorter than 32 characters")
            return cls.from_secret(secret, settings.encryption_salt)
        if settings.is_production:
            raise ConfigurationError("IPTV_ENCRYPTION_KEY is required in production")
        logger.warning(
            "IPTV_ENCRYPTION_KEY not set: using an ephemeral key, "
            "all stream tokens become invalid when the process restarts"
        )
        return cls.ephemeral()

    def _tag(self, data: bytes) -> bytes:
        h = hmac.HMAC(self._mac_key, hashes.SHA256())
        h.update(data)
        return h.finalize()[:TAG_LENGTH]

    def encode(self, url: str) -> str:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(BLOCK_LENGTH * 8).padder()
        padded = padder.update(url.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(iv)).encryptor()
        body = iv + encryptor.update(padded) + encryptor.finalize()
        return (body + self._tag(body)).hex()

    def decode(self, token: str) -> str:
        """Recover the URL; any defect raises ``InvalidToken``."""
        if not isinstance(token, str) or len(token) % 2 or not _HEX_PATTERN.fullmatch(token):
            raise InvalidToken()

        raw = bytes.fromhex(token)
        ct_length = len(raw) - IV_LENGTH - TAG_LENGTH
        if ct_length < BLOCK_LENGTH or ct_length % BLOCK_LENGTH:
            raise InvalidToken()

        body, tag = raw[:-TAG_LENGTH], raw[-TAG_LENGTH:]
        if not constant_time.bytes_eq(self._tag(body), tag):
            raise InvalidToken()

        iv, ciphertext = body[:IV_LENGTH], body[IV_LENGTH:]
        decryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        try:
            unpadder = padding.PKCS7(BLOCK_LENGTH * 8).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()
            return data.decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            raise InvalidToken()
