from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os


def new_random_token(*, nbytes: int = 32) -> str:
    raw = os.urandom(nbytes)
    # URL-safe base64 without padding to keep headers compact.
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_shared_secret(*, provided: str | None, expected: str) -> bool:
    # An unconfigured secret never authenticates anything.
    if not expected or not provided:
        return False
    return constant_time_equals(provided.strip(), expected)


def verify_basic_auth(*, authorization: str | None, username: str, password: str) -> bool:
    if not username or not password or not authorization:
        return False
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return False
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return False
    user, sep, pw = decoded.partition(":")
    if not sep:
        return False
    # Both halves are always compared.
    user_ok = constant_time_equals(user, username)
    pass_ok = constant_time_equals(pw, password)
    return user_ok and pass_ok


def compute_hmac_signature(*, secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hmac_signature(*, signature: str | None, secret: str, body: bytes) -> bool:
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256=") :]
    expected = compute_hmac_signature(secret=secret, body=body)
    return constant_time_equals(provided.lower(), expected)
