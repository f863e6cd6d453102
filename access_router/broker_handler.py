import json
import os
import time
from datetime import datetime, timezone
from typing import Any

import boto3

from access_router.config import RouterConfig, load_config
from access_router.errors import ConfigError, RouterError, TrustDenied, UnknownEnvironment
from access_router.exchange import CredentialExchange
from access_router.tokens import decode_claims

_sts_client = None

SCHEMA_VERSION = os.environ.get("SCHEMA_VERSION", "2026-10-01")
CREDENTIALS_PATH = os.environ.get("CREDENTIALS_PATH", "/v1/credentials")
ENVIRONMENTS_PATH = os.environ.get("ENVIRONMENTS_PATH", "/v1/environments")
DEFAULT_TTL_SECONDS = int(os.environ.get("DEFAULT_TTL_SECONDS", "3600"))

# Resolved once per cold start; a request never sees a partially-updated config.
try:
    _CONFIG: RouterConfig | None = load_config()
    _CONFIG_ERROR = ""
except ConfigError as _e:
    _CONFIG = None
    _CONFIG_ERROR = str(_e)


def _sts() -> Any:
    global _sts_client
    if _sts_client is None:
        _sts_client = boto3.client("sts")
    return _sts_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"content-type": "application/json", "cache-control": "no-store"},
        "body": json.dumps(body),
    }


def _error(status_code: int, code: str, message: str, request_id: str) -> dict[str, Any]:
    return _response(
        status_code,
        {"errorCode": code, "message": message, "requestId": request_id},
    )


def _get_header(event: dict[str, Any], name: str) -> str:
    headers = event.get("headers") or {}
    if not isinstance(headers, dict):
        return ""
    # API Gateway can canonicalize headers; treat them case-insensitively.
    for k, v in headers.items():
        if isinstance(k, str) and k.lower() == name.lower():
            return str(v) if v is not None else ""
    return ""


def _get_request_id(event: dict[str, Any]) -> str:
    return str((event.get("requestContext") or {}).get("requestId") or "")


def _request_method(event: dict[str, Any]) -> str:
    rc = event.get("requestContext") or {}
    http = rc.get("http") if isinstance(rc, dict) else None
    raw = event.get("httpMethod") or (http.get("method") if isinstance(http, dict) else "")
    return str(raw or "").upper()


def _request_path_values(event: dict[str, Any]) -> list[str]:
    out: list[str] = []
    rc = event.get("requestContext") or {}
    candidates = [
        event.get("rawPath"),
        event.get("path"),
        event.get("resource"),
        rc.get("path") if isinstance(rc, dict) else None,
        rc.get("resourcePath") if isinstance(rc, dict) else None,
    ]
    for raw in candidates:
        val = str(raw or "").strip()
        if val:
            out.append(val)
    return out


def _request_matches_path(event: dict[str, Any], expected_path: str) -> bool:
    expected = str(expected_path or "").strip().rstrip("/")
    if not expected:
        return False
    for raw in _request_path_values(event):
        candidate = raw.rstrip("/")
        if candidate == expected or candidate.endswith(expected):
            return True
    return False


def _parse_json_body(event: dict[str, Any]) -> dict[str, Any]:
    raw = event.get("body")
    if raw is None:
        return {}
    text = str(raw)
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except ValueError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return parsed


def _bearer_token(event: dict[str, Any]) -> str:
    auth = _get_header(event, "authorization").strip()
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def _principal(token: str) -> dict[str, str]:
    try:
        claims = decode_claims(token)
    except TrustDenied:
        return {}
    return {
        "sub": str(claims.get("sub") or ""),
        "repository": str(claims.get("repository") or ""),
        "ref": str(claims.get("ref") or ""),
        "run_id": str(claims.get("run_id") or ""),
    }


def _list_environments(config: RouterConfig) -> dict[str, Any]:
    return {
        "environments": [env.summary() for env in config.environments],
        "githubRepo": config.github_repo,
        "projectName": config.project_name,
    }


def _issue_credentials(
    config: RouterConfig, event: dict[str, Any], wide_event: dict[str, Any]
) -> dict[str, Any]:
    token = _bearer_token(event)
    if not token:
        raise TrustDenied("missing bearer token")
    principal = _principal(token)
    if principal:
        wide_event["principal"] = principal

    payload = _parse_json_body(event)
    label = str(payload.get("environment") or "")
    wide_event["environment"] = label.strip().lower()
    env = config.select(label)

    exchanger = CredentialExchange(sts_client=_sts(), duration_seconds=DEFAULT_TTL_SECONDS)
    creds = exchanger.exchange(token, env, run_id=principal.get("run_id", ""))
    wide_event["role_arn"] = creds.role_arn
    wide_event["expiration"] = creds.expiration_iso()
    return {
        "kind": "access-router.credentials.v1",
        "environment": env.name,
        "accountId": env.account_id,
        "roleArn": env.role_arn,
        "region": env.region,
        "assumedRoleArn": creds.assumed_role_arn,
        "credentials": creds.credentials_payload(),
    }


def handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    start = time.time()
    request_id = _get_request_id(event)

    wide_event: dict[str, Any] = {
        "event": "access_router_broker_request",
        "schema_version": SCHEMA_VERSION,
        "request_id": request_id,
        "ts": _now_iso(),
        "method": _request_method(event),
    }

    status_code = 500
    try:
        if _CONFIG is None:
            status_code = 500
            wide_event["outcome"] = "error"
            wide_event["error"] = {"type": "ConfigError", "message": _CONFIG_ERROR}
            return _error(status_code, "MISCONFIGURED", "Server misconfigured", request_id)

        if _request_matches_path(event, ENVIRONMENTS_PATH):
            status_code = 200
            wide_event["outcome"] = "success"
            return _response(status_code, _list_environments(_CONFIG))

        if not _request_matches_path(event, CREDENTIALS_PATH):
            status_code = 404
            wide_event["outcome"] = "not_found"
            return _error(status_code, "NOT_FOUND", "Not found", request_id)

        if _request_method(event) not in ("", "POST"):
            status_code = 405
            wide_event["outcome"] = "error"
            return _error(status_code, "METHOD_NOT_ALLOWED", "Use POST", request_id)

        try:
            body = _issue_credentials(_CONFIG, event, wide_event)
        except UnknownEnvironment as e:
            status_code = e.status_code
            wide_event["outcome"] = "invalid_environment"
            wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
            return _error(status_code, e.error_code, str(e), request_id)
        except RouterError as e:
            status_code = e.status_code
            wide_event["outcome"] = "unauthorized" if status_code in (401, 403) else "error"
            wide_event["error"] = {"type": type(e).__name__, "message": str(e)}
            code = e.error_code
            if status_code >= 500 and not isinstance(e, ConfigError):
                code = "STS_ISSUE_FAILED"
            return _error(status_code, code, str(e), request_id)

        status_code = 200
        wide_event["outcome"] = "success"
        return _response(status_code, body)
    except Exception as exc:
        status_code = 500
        wide_event["outcome"] = "error"
        wide_event["error"] = {"type": type(exc).__name__, "message": str(exc)}
        return _error(
            status_code, "STS_ISSUE_FAILED", "Failed to issue scoped credentials", request_id
        )
    finally:
        wide_event["status_code"] = status_code
        wide_event["duration_ms"] = int((time.time() - start) * 1000)
        # Never log credential material.
        print(json.dumps(wide_event, separators=(",", ":"), sort_keys=True))
