from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import hmac
import os
import secrets
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from caseregistry.core.config import Settings, get_settings
from caseregistry.core.errors import CryptoConfigError, DecryptionError, EncryptionError
from caseregistry.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material


FIELD_ALGORITHM = "aes-256-gcm"
_NONCE_BYTES = 12
_TAG_BYTES = 16
_MIN_HASH_KEY_BYTES = 16


def make_pseudonym() -> str:
    # Short random display code, unrelated to any identity value.
    return "B-" + secrets.token_hex(4).upper()


@dataclass(frozen=True)
class FieldCipher:
    """Field-level AES-256-GCM sealing plus keyed hashing for match keys.

    Keys are held by the instance rather than read from globals so tests and
    key rotation can supply their own material.
    """

    enc_key: bytes = field(repr=False)
    hash_key: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if len(self.enc_key) != 32:
            raise CryptoConfigError("BENEFICIARY_ENC_KEY must be a 32-byte key (provide as base64 or hex)")
        if len(self.hash_key) < _MIN_HASH_KEY_BYTES:
            raise CryptoConfigError("BENEFICIARY_HASH_KEY must be at least 16 bytes")

    @classmethod
    def from_key_material(cls, *, enc_key: str | None, hash_key: str | None) -> "FieldCipher":
        if not enc_key:
            raise CryptoConfigError("BENEFICIARY_ENC_KEY is not configured")
        if not hash_key:
            raise CryptoConfigError("BENEFICIARY_HASH_KEY is not configured")
        try:
            enc = decode_key_material(enc_key)
        except ValueError as exc:
            raise CryptoConfigError("BENEFICIARY_ENC_KEY must be base64 or hex") from exc
        return cls(enc_key=enc, hash_key=decode_key_material(hash_key, allow_utf8=True))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "FieldCipher":
        resolved = settings or get_settings()
        return cls.from_key_material(
            enc_key=resolved.beneficiary_enc_key,
            hash_key=resolved.beneficiary_hash_key,
        )

    def hmac_sha256(self, value: str) -> str:
        return hmac.new(self.hash_key, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def encrypt_field(self, plaintext: Any) -> dict[str, str] | None:
        if plaintext is None or plaintext == "":
            return None
        try:
            nonce = os.urandom(_NONCE_BYTES)
            sealed = AESGCM(self.enc_key).encrypt(nonce, str(plaintext).encode("utf-8"), None)
        except (TypeError, ValueError, UnicodeEncodeError) as exc:
            raise EncryptionError("field encryption failed") from exc
        # AESGCM appends the tag; store it separately so the object is self-describing.
        return {
            "alg": FIELD_ALGORITHM,
            "iv": b64encode_bytes(nonce),
            "tag": b64encode_bytes(sealed[-_TAG_BYTES:]),
            "data": b64encode_bytes(sealed[:-_TAG_BYTES]),
        }

    def decrypt_field(self, encrypted: dict[str, Any] | None) -> str | None:
        if not encrypted:
            return None
        if not isinstance(encrypted, dict) or encrypted.get("alg") != FIELD_ALGORITHM:
            raise DecryptionError("unsupported encrypted field object")
        try:
            nonce = b64decode_str(encrypted["iv"])
            tag = b64decode_str(encrypted["tag"])
            data = b64decode_str(encrypted["data"])
        except (KeyError, TypeError, ValueError) as exc:
            raise DecryptionError("malformed encrypted field object") from exc
        if len(nonce) != _NONCE_BYTES or len(tag) != _TAG_BYTES:
            raise DecryptionError("malformed encrypted field object")
        try:
            plaintext = AESGCM(self.enc_key).decrypt(nonce, data + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("authentication tag mismatch") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("decrypted field is not valid utf-8") from exc


def get_field_cipher() -> FieldCipher:
    # Build from current settings on each call so cache_clear() picks up rotated keys.
    return FieldCipher.from_settings(get_settings())
