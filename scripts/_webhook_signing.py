"""Helpers for signing webhook bodies the way each gateway does (tests and local replays)."""
import hashlib
import hmac
import json


def canonical_json_bytes(payload) -> bytes:
    return json.dumps(
        payload,
        separators=(",", ":"),
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")


def hmac_hex(secret: str, body_bytes: bytes, digest=hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), body_bytes, digest).hexdigest()


def push_signature_header(secret: str, body_bytes: bytes) -> dict[str, str]:
    return {"X-Signature": "sha256=" + hmac_hex(secret, body_bytes)}


def split_signature_header(secret: str, body_bytes: bytes) -> dict[str, str]:
    return {"X-Gateway-Signature": hmac_hex(secret, body_bytes, hashlib.sha512)}
