from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen


class RouterOpsError(Exception):
    pass


class UsageError(RouterOpsError):
    pass


class OpError(RouterOpsError):
    pass


ROUTER_ACCOUNTS_FILE = "ROUTER_ACCOUNTS_FILE"
ROUTER_STATE_TABLE = "ROUTER_STATE_TABLE"
ROUTER_BROKER_ENDPOINT = "ROUTER_BROKER_ENDPOINT"
ROUTER_POLICY_IDS = "ROUTER_POLICY_IDS"


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    pretty: bool
    quiet: bool
    accounts_file: str = ""
    state_table: str = ""
    region: str = ""


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _require_str(val: str | None, name: str, *, hint: str) -> str:
    v = (val or "").strip()
    if not v:
        raise UsageError(f"missing {name} ({hint})")
    return v


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2, sort_keys=True, default=str) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":"), sort_keys=True, default=str) + "\n")


def _load_json_object(*, raw: str, label: str) -> dict[str, Any]:
    try:
        val = json.loads(raw)
    except ValueError as e:
        raise UsageError(f"invalid {label}: {e}") from e
    if not isinstance(val, dict):
        raise UsageError(f"invalid {label}: expected JSON object")
    return val


def _parse_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    out: list[str] = []
    for part in raw.split(","):
        v = part.strip()
        if v and v not in out:
            out.append(v)
    return out


def _write_secure_json(*, path: Path, obj: dict[str, Any]) -> None:
    _write_secure_text(path=path, text=json.dumps(obj, indent=2, sort_keys=True) + "\n")


def _write_secure_text(*, path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        raise OpError(f"failed to apply 0600 permissions to {path}: {e}") from e


def _http_request(
    *,
    method: str,
    url: str,
    headers: dict[str, str],
    body: bytes | None = None,
    timeout_seconds: int = 30,
) -> tuple[int, dict[str, str], bytes]:
    req = Request(url, data=body, method=str(method).upper())
    for k, v in headers.items():
        req.add_header(k, v)
    try:
        with urlopen(req, timeout=timeout_seconds) as resp:
            status = getattr(resp, "status", 200)
            hdrs = {k.lower(): v for k, v in dict(resp.headers).items()}
            data = resp.read()
            return int(status), hdrs, data
    except HTTPError as e:
        hdrs = {k.lower(): v for k, v in dict(e.headers).items()}
        data = e.read() if hasattr(e, "read") else b""
        return int(getattr(e, "code", 0) or 0), hdrs, data
    except URLError as e:
        raise OpError(f"http request failed: {e}") from e


def _json_obj_or_error(*, raw: bytes, label: str) -> dict[str, Any]:
    text = raw.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(text)
    except ValueError as e:
        raise OpError(f"invalid JSON from {label}: {e}; body={text}") from e
    if not isinstance(parsed, dict):
        raise OpError(f"invalid JSON from {label}: expected object")
    return parsed
