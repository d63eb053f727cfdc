from __future__ import annotations

import base64
import binascii


def decode_key_material(value: str, *, allow_utf8: bool = False) -> bytes:
    """Decode hex or base64 key material into raw bytes.

    With ``allow_utf8`` the raw UTF-8 bytes are accepted as a last resort, which
    suits HMAC keys where any byte string of sufficient length is usable.
    """
    stripped = value.strip()
    if not stripped:
        raise ValueError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            if allow_utf8:
                return stripped.encode("utf-8")
            raise ValueError("key material must be base64 or hex") from exc


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)
