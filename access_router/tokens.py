from __future__ import annotations

import base64
import json
import time
from typing import Any

from .errors import Expired, TrustDenied

# Tolerated issuer clock drift for nbf; exp is enforced strictly.
CLOCK_SKEW_SECONDS = 30


def decode_claims(token: str) -> dict[str, Any]:
    """
    Decode the JWT payload without verifying the signature.

    Signature verification is left to STS, which checks the token against the
    OIDC provider registered in the target account. Local decoding only lets us
    refuse tokens that can never pass the role's trust condition.
    """

    parts = str(token or "").strip().split(".")
    if len(parts) != 3 or not parts[1]:
        raise TrustDenied("malformed identity token")
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        raw = base64.urlsafe_b64decode(payload.encode("utf-8"))
        claims = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        raise TrustDenied(f"malformed identity token payload: {e}") from e
    if not isinstance(claims, dict):
        raise TrustDenied("malformed identity token payload: expected JSON object")
    return claims


def _epoch(claims: dict[str, Any], key: str) -> int | None:
    val = claims.get(key)
    if val is None:
        return None
    if isinstance(val, bool):
        raise TrustDenied(f"invalid {key} claim")
    try:
        return int(val)
    except (TypeError, ValueError) as e:
        raise TrustDenied(f"invalid {key} claim") from e


def check_validity_window(claims: dict[str, Any], *, now: float | None = None) -> int:
    """Raise Expired outside [nbf, exp); return seconds remaining."""

    current = int(time.time() if now is None else now)
    exp = _epoch(claims, "exp")
    if exp is None:
        raise Expired("identity token has no exp claim")
    if exp <= current:
        raise Expired(f"identity token expired {current - exp}s ago; re-run the workflow")
    nbf = _epoch(claims, "nbf")
    if nbf is not None and nbf > current + CLOCK_SKEW_SECONDS:
        raise Expired("identity token is not valid yet")
    return max(exp - current, 0)
