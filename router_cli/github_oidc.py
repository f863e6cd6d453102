"""GitHub Actions runner integration: OIDC token request and step output files."""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Mapping
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from access_router.trust import DEFAULT_AUDIENCE

from .cli_shared import OpError, UsageError, _http_request, _json_obj_or_error

ACTIONS_ID_TOKEN_REQUEST_URL = "ACTIONS_ID_TOKEN_REQUEST_URL"
ACTIONS_ID_TOKEN_REQUEST_TOKEN = "ACTIONS_ID_TOKEN_REQUEST_TOKEN"


def _with_audience(url: str, audience: str) -> str:
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != "audience"]
    query.append(("audience", audience))
    return urlunparse(parsed._replace(query=urlencode(query)))


def fetch_id_token(*, audience: str = DEFAULT_AUDIENCE) -> str:
    """Request a job OIDC token; needs `permissions: id-token: write` on the job."""

    url = (os.environ.get(ACTIONS_ID_TOKEN_REQUEST_URL) or "").strip()
    bearer = (os.environ.get(ACTIONS_ID_TOKEN_REQUEST_TOKEN) or "").strip()
    if not url or not bearer:
        raise UsageError(
            f"missing {ACTIONS_ID_TOKEN_REQUEST_URL}/{ACTIONS_ID_TOKEN_REQUEST_TOKEN} "
            "(run inside GitHub Actions with id-token: write permission)"
        )
    status, _hdrs, raw = _http_request(
        method="GET",
        url=_with_audience(url, audience),
        headers={"Authorization": f"bearer {bearer}", "Accept": "application/json"},
    )
    if status < 200 or status >= 300:
        raise OpError(f"OIDC token request failed: status={status}")
    token = str(_json_obj_or_error(raw=raw, label="OIDC token endpoint").get("value") or "").strip()
    if not token:
        raise OpError("OIDC token endpoint returned no token")
    return token


def _append_kv(path: Path, values: Mapping[str, str]) -> None:
    lines: list[str] = []
    for key, val in values.items():
        text = str(val)
        if "\n" in text:
            delim = f"ghadelimiter_{uuid.uuid4()}"
            lines.append(f"{key}<<{delim}\n{text}\n{delim}")
        else:
            lines.append(f"{key}={text}")
    with path.open("a", encoding="utf-8") as fh:
        fh.write("\n".join(lines) + "\n")


def write_step_outputs(values: Mapping[str, str]) -> Path | None:
    raw = (os.environ.get("GITHUB_OUTPUT") or "").strip()
    if not raw:
        return None
    path = Path(raw)
    _append_kv(path, values)
    return path


def github_env_path() -> Path | None:
    raw = (os.environ.get("GITHUB_ENV") or "").strip()
    return Path(raw) if raw else None


def export_env(values: Mapping[str, str]) -> Path | None:
    path = github_env_path()
    if path is None:
        return None
    _append_kv(path, values)
    return path


def mask_command(value: str) -> str:
    return f"::add-mask::{value}"
