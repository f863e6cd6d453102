from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import boto3
from botocore.exceptions import ClientError

from .environments import Environment
from .errors import Expired, RouterError, TrustDenied
from .tokens import check_validity_window, decode_claims

MIN_DURATION_SECONDS = 900
MAX_DURATION_SECONDS = 3600

_TRUST_DENIED_CODES = {"AccessDenied", "InvalidIdentityToken", "IDPRejectedClaim"}
_EXPIRED_CODES = {"ExpiredTokenException"}


@dataclass(frozen=True)
class TemporaryCredentials:
    environment: str
    account_id: str
    role_arn: str
    assumed_role_arn: str
    expiration: datetime
    access_key_id: str = field(repr=False)
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)

    def expiration_iso(self) -> str:
        if hasattr(self.expiration, "isoformat"):
            return self.expiration.isoformat()
        return str(self.expiration)

    def credential_process_output(self) -> dict[str, Any]:
        return {
            "Version": 1,
            "AccessKeyId": self.access_key_id,
            "SecretAccessKey": self.secret_access_key,
            "SessionToken": self.session_token,
            "Expiration": self.expiration_iso(),
        }

    def env_exports(self) -> dict[str, str]:
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_SESSION_TOKEN": self.session_token,
        }

    def credentials_payload(self) -> dict[str, str]:
        return {
            "accessKeyId": self.access_key_id,
            "secretAccessKey": self.secret_access_key,
            "sessionToken": self.session_token,
            "expiration": self.expiration_iso(),
        }

    @classmethod
    def from_broker_document(cls, doc: dict[str, Any]) -> "TemporaryCredentials":
        """Rebuild credentials from a broker `access-router.credentials.v1` body."""

        creds = doc.get("credentials") or {}
        if not isinstance(creds, dict):
            creds = {}
        missing = [k for k in ("accessKeyId", "secretAccessKey", "sessionToken") if not creds.get(k)]
        if missing:
            raise RouterError(f"broker returned incomplete credentials (missing {', '.join(missing)})")
        raw_exp = str(creds.get("expiration") or "")
        try:
            expiration: Any = datetime.fromisoformat(raw_exp.replace("Z", "+00:00"))
        except ValueError:
            expiration = raw_exp
        return cls(
            environment=str(doc.get("environment") or ""),
            account_id=str(doc.get("accountId") or ""),
            role_arn=str(doc.get("roleArn") or ""),
            assumed_role_arn=str(doc.get("assumedRoleArn") or ""),
            expiration=expiration,
            access_key_id=str(creds["accessKeyId"]),
            secret_access_key=str(creds["secretAccessKey"]),
            session_token=str(creds["sessionToken"]),
        )

    def describe(self) -> dict[str, Any]:
        # Safe to log: no key material.
        return {
            "environment": self.environment,
            "accountId": self.account_id,
            "roleArn": self.role_arn,
            "assumedRoleArn": self.assumed_role_arn,
            "expiration": self.expiration_iso(),
        }


def session_name(environment: str, run_id: str = "") -> str:
    # STS RoleSessionName: <= 64 chars, [\w+=,.@-].
    raw = f"gha-{environment}-{run_id}" if run_id else f"gha-{environment}"
    sanitized = re.sub(r"[^a-zA-Z0-9+=,.@_-]", "", raw)
    return sanitized[:64] or "gha-session"


def bounded_duration(seconds: int) -> int:
    return min(max(int(seconds), MIN_DURATION_SECONDS), MAX_DURATION_SECONDS)


class CredentialExchange:
    """
    Exchange a CI identity token for credentials in exactly one environment role.

    There is no fallback chain: a rejected exchange is terminal for the run and
    is never retried against another role.
    """

    def __init__(
        self,
        *,
        sts_client: Any = None,
        region: str | None = None,
        duration_seconds: int = MAX_DURATION_SECONDS,
    ) -> None:
        self._sts_client = sts_client
        self._region = region
        self.duration_seconds = bounded_duration(duration_seconds)

    def _sts(self) -> Any:
        if self._sts_client is None:
            self._sts_client = boto3.client("sts", region_name=self._region)
        return self._sts_client

    def preflight(self, token: str, environment: Environment, *, now: float | None = None) -> dict[str, Any]:
        """Local claim checks; returns the decoded claims when they can pass the trust policy."""

        claims = decode_claims(token)
        check_validity_window(claims, now=now)
        environment.trust.check(claims)
        return claims

    def exchange(
        self,
        token: str,
        environment: Environment,
        *,
        run_id: str = "",
        now: float | None = None,
    ) -> TemporaryCredentials:
        self.preflight(token, environment, now=now)
        try:
            out = self._sts().assume_role_with_web_identity(
                RoleArn=environment.role_arn,
                RoleSessionName=session_name(environment.name, run_id),
                WebIdentityToken=token,
                DurationSeconds=self.duration_seconds,
            )
        except ClientError as e:
            code = str((e.response.get("Error") or {}).get("Code") or "")
            if code in _EXPIRED_CODES:
                raise Expired(f"STS rejected an expired token for {environment.role_arn}") from e
            if code in _TRUST_DENIED_CODES:
                raise TrustDenied(
                    f"STS denied {environment.role_arn} ({code}); check the role trust policy"
                ) from e
            raise

        creds = out.get("Credentials") or {}
        assumed = out.get("AssumedRoleUser") or {}
        missing = [k for k in ("AccessKeyId", "SecretAccessKey", "SessionToken") if not creds.get(k)]
        if missing:
            raise RouterError(f"STS returned incomplete credentials (missing {', '.join(missing)})")
        return TemporaryCredentials(
            environment=environment.name,
            account_id=environment.account_id,
            role_arn=environment.role_arn,
            assumed_role_arn=str(assumed.get("Arn") or ""),
            expiration=creds.get("Expiration"),
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds["SessionToken"],
        )
