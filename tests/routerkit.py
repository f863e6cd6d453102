import base64
import json
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

REPO = "acme/static-site"
ACCOUNTS = {"dev": "111111111111", "staging": "222222222222", "prod": "333333333333"}
MANAGEMENT = "999999999999"

ROUTER_ENV_VARS = (
    "GITHUB_REPO",
    "PROJECT_NAME",
    "PROJECT_SHORT_NAME",
    "AWS_DEFAULT_REGION",
    "MANAGEMENT_ACCOUNT_ID",
    "AWS_ACCOUNT_ID_DEV",
    "AWS_ACCOUNT_ID_STAGING",
    "AWS_ACCOUNT_ID_PROD",
    "ROUTER_ENVIRONMENTS_JSON",
    "ROUTER_ACCOUNTS_FILE",
    "ROUTER_STATE_TABLE",
    "ROUTER_BROKER_ENDPOINT",
    "ROUTER_OIDC_TOKEN",
    "ACTIONS_ID_TOKEN_REQUEST_URL",
    "ACTIONS_ID_TOKEN_REQUEST_TOKEN",
    "GITHUB_OUTPUT",
    "GITHUB_ENV",
    "GITHUB_RUN_ID",
)

def base_environ(**overrides: str) -> dict[str, str]:
    env = {
        "GITHUB_REPO": REPO,
        "MANAGEMENT_ACCOUNT_ID": MANAGEMENT,
        "AWS_ACCOUNT_ID_DEV": ACCOUNTS["dev"],
        "AWS_ACCOUNT_ID_STAGING": ACCOUNTS["staging"],
        "AWS_ACCOUNT_ID_PROD": ACCOUNTS["prod"],
    }
    env.update(overrides)
    return env

def make_token(claims: dict) -> str:
    def seg(obj: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")

    return f"{seg({'alg': 'RS256', 'typ': 'JWT'})}.{seg(claims)}.sig"

def github_claims(*, repository: str = REPO, ref: str = "refs/heads/main", **extra) -> dict:
    now = int(time.time())
    claims = {
        "iss": "https://token.actions.githubusercontent.com",
        "aud": "sts.amazonaws.com",
        "sub": f"repo:{repository}:ref:{ref}",
        "repository": repository,
        "ref": ref,
        "run_id": "4242",
        "iat": now,
        "nbf": now - 5,
        "exp": now + 300,
    }
    claims.update(extra)
    return claims

