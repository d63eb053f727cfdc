from __future__ import annotations

import argparse
import secrets

from caseregistry.services.crypto.fields import FieldCipher
from caseregistry.services.crypto.utils import b64encode_bytes


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate PII encryption and match-key hashing keys")
    parser.add_argument("--hash-bytes", type=int, default=32, help="HMAC key length in bytes (>= 16)")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    enc_key = secrets.token_bytes(32)
    hash_key = secrets.token_bytes(args.hash_bytes)
    # Constructing the cipher applies the same length checks the API uses at startup.
    FieldCipher(enc_key=enc_key, hash_key=hash_key)
    print(f"BENEFICIARY_ENC_KEY={b64encode_bytes(enc_key)}")
    print(f"BENEFICIARY_HASH_KEY={b64encode_bytes(hash_key)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
