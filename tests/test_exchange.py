from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from routerkit import github_claims, make_token

from access_router.errors import Expired, RouterError, TrustDenied
from access_router.exchange import (
    CredentialExchange,
    TemporaryCredentials,
    bounded_duration,
    session_name,
)

EXPIRATION = datetime(2026, 10, 18, 13, 0, tzinfo=timezone.utc)


class FakeSts:
    def __init__(self, *, error_code: str = "", credentials: dict | None = None):
        self.calls = []
        self.error_code = error_code
        self.credentials = credentials

    def assume_role_with_web_identity(self, **kwargs):
        self.calls.append(kwargs)
        if self.error_code:
            raise ClientError(
                {"Error": {"Code": self.error_code, "Message": "nope"}},
                "AssumeRoleWithWebIdentity",
            )
        n = len(self.calls)
        return {
            "Credentials": self.credentials
            if self.credentials is not None
            else {
                "AccessKeyId": f"ASIA{n}",
                "SecretAccessKey": f"secret-{n}",
                "SessionToken": f"token-{n}",
                "Expiration": EXPIRATION,
            },
            "AssumedRoleUser": {
                "Arn": f"arn:aws:sts::222222222222:assumed-role/GitHubActions-StaticSite-Staging-Role/gha-staging-{n}",
            },
        }


def test_exchange_assumes_the_selected_role_once(router_config):
    sts = FakeSts()
    env = router_config.select("staging")
    creds = CredentialExchange(sts_client=sts).exchange(make_token(github_claims()), env, run_id="4242")

    assert len(sts.calls) == 1
    call = sts.calls[0]
    assert call["RoleArn"] == "arn:aws:iam::222222222222:role/GitHubActions-StaticSite-Staging-Role"
    assert call["RoleSessionName"] == "gha-staging-4242"
    assert call["DurationSeconds"] == 3600
    assert creds.account_id == "222222222222"
    assert creds.environment == "staging"
    assert creds.expiration_iso() == "2026-10-18T13:00:00+00:00"


def test_exchange_is_idempotent_and_independent(router_config):
    sts = FakeSts()
    env = router_config.select("dev")
    token = make_token(github_claims())
    exchanger = CredentialExchange(sts_client=sts)

    first = exchanger.exchange(token, env)
    second = exchanger.exchange(token, env)

    assert first.access_key_id != second.access_key_id
    assert first.describe()["roleArn"] == second.describe()["roleArn"]
    assert first.account_id == second.account_id


def test_mismatched_repository_never_reaches_sts(router_config):
    sts = FakeSts()
    token = make_token(github_claims(repository="acme/other-site"))
    with pytest.raises(TrustDenied):
        CredentialExchange(sts_client=sts).exchange(token, router_config.select("prod"))
    assert sts.calls == []


def test_expired_token_never_reaches_sts(router_config):
    sts = FakeSts()
    token = make_token(github_claims(exp=1_000))
    with pytest.raises(Expired):
        CredentialExchange(sts_client=sts).exchange(token, router_config.select("dev"))
    assert sts.calls == []


@pytest.mark.parametrize("code", ["AccessDenied", "InvalidIdentityToken", "IDPRejectedClaim"])
def test_sts_denial_is_terminal_with_no_fallback(router_config, code):
    sts = FakeSts(error_code=code)
    with pytest.raises(TrustDenied, match=code):
        CredentialExchange(sts_client=sts).exchange(
            make_token(github_claims()), router_config.select("staging")
        )
    # Exactly one attempt, against the selected role only.
    assert [c["RoleArn"] for c in sts.calls] == [
        "arn:aws:iam::222222222222:role/GitHubActions-StaticSite-Staging-Role"
    ]


def test_sts_expired_token_maps_to_expired(router_config):
    sts = FakeSts(error_code="ExpiredTokenException")
    with pytest.raises(Expired):
        CredentialExchange(sts_client=sts).exchange(
            make_token(github_claims()), router_config.select("dev")
        )
    assert len(sts.calls) == 1


def test_other_sts_errors_propagate(router_config):
    sts = FakeSts(error_code="Throttling")
    with pytest.raises(ClientError):
        CredentialExchange(sts_client=sts).exchange(
            make_token(github_claims()), router_config.select("dev")
        )
    assert len(sts.calls) == 1


def test_incomplete_credentials_fail(router_config):
    sts = FakeSts(credentials={"AccessKeyId": "ASIA", "Expiration": EXPIRATION})
    with pytest.raises(RouterError, match="incomplete"):
        CredentialExchange(sts_client=sts).exchange(
            make_token(github_claims()), router_config.select("dev")
        )


def test_credential_outputs(router_config):
    creds = CredentialExchange(sts_client=FakeSts()).exchange(
        make_token(github_claims()), router_config.select("dev")
    )
    out = creds.credential_process_output()
    assert out["Version"] == 1
    assert out["AccessKeyId"] == "ASIA1"
    assert creds.env_exports()["AWS_SESSION_TOKEN"] == "token-1"
    assert "secret-1" not in repr(creds)
    assert "secret-1" not in str(creds.describe())


def test_session_name_and_duration_bounds():
    assert session_name("dev", "run/1 2") == "gha-dev-run12"
    assert len(session_name("dev", "x" * 200)) == 64
    assert bounded_duration(60) == 900
    assert bounded_duration(7200) == 3600


def test_broker_document_rebuilds_the_same_credentials(router_config):
    creds = CredentialExchange(sts_client=FakeSts()).exchange(
        make_token(github_claims()), router_config.select("staging")
    )
    doc = {
        "environment": "staging",
        "accountId": creds.account_id,
        "roleArn": creds.role_arn,
        "assumedRoleArn": creds.assumed_role_arn,
        "credentials": creds.credentials_payload(),
    }

    rebuilt = TemporaryCredentials.from_broker_document(doc)
    assert rebuilt.credential_process_output() == creds.credential_process_output()
    assert rebuilt.describe() == creds.describe()


def test_broker_document_without_secret_fails():
    doc = {"environment": "dev", "credentials": {"accessKeyId": "ASIA", "sessionToken": "t"}}
    with pytest.raises(RouterError, match="secretAccessKey"):
        TemporaryCredentials.from_broker_document(doc)
