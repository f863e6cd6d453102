import json
import os

import pytest

from routerkit import github_claims, make_token

from router_cli.cli_shared import _http_request

pytestmark = pytest.mark.skipif(
    os.environ.get("RUN_INTEGRATION") != "1" or not os.environ.get("ROUTER_BROKER_ENDPOINT"),
    reason="integration tests require RUN_INTEGRATION=1 and ROUTER_BROKER_ENDPOINT",
)


def _url(path: str) -> str:
    return os.environ["ROUTER_BROKER_ENDPOINT"].rstrip("/") + path


def _post_credentials(body: dict, *, token: str | None) -> tuple[int, dict]:
    headers = {"content-type": "application/json"}
    if token:
        headers["authorization"] = f"Bearer {token}"
    status, _hdrs, raw = _http_request(
        method="POST",
        url=_url("/v1/credentials"),
        headers=headers,
        body=json.dumps(body).encode("utf-8"),
    )
    return status, json.loads(raw.decode("utf-8"))


def test_environments_listing_is_public_and_secret_free():
    status, hdrs, raw = _http_request(method="GET", url=_url("/v1/environments"), headers={})
    assert status == 200
    assert hdrs.get("cache-control") == "no-store"
    doc = json.loads(raw.decode("utf-8"))
    names = [e["name"] for e in doc["environments"]]
    assert names
    assert set(names) <= {"dev", "staging", "prod"}
    assert "credentials" not in doc


def test_credentials_require_bearer_token():
    status, doc = _post_credentials({"environment": "dev"}, token=None)
    assert status == 403
    assert doc["errorCode"] == "TRUST_DENIED"


def test_unknown_environment_is_rejected_before_sts():
    status, doc = _post_credentials({"environment": "qa"}, token=make_token(github_claims()))
    assert status == 400
    assert doc["errorCode"] == "UNKNOWN_ENVIRONMENT"


def test_forged_token_is_denied():
    status, doc = _post_credentials({"environment": "dev"}, token=make_token(github_claims()))
    assert status in (401, 403)
    assert "credentials" not in doc
