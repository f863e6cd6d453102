import json

import pytest

from routerkit import REPO, base_environ

from access_router.config import BASE_FEATURES, load_config
from access_router.errors import ConfigError


def test_feature_tiers_match_documented_table(router_config):
    dev = router_config.select("dev").features
    staging = router_config.select("staging").features
    prod = router_config.select("prod").features

    assert (dev.tier, dev.enable_cloudfront, dev.enable_waf) == ("s3-only", False, False)
    assert dev.force_destroy_bucket is True
    assert (staging.tier, staging.enable_cloudfront, staging.enable_waf) == (
        "cloudfront-s3",
        True,
        False,
    )
    assert staging.cloudfront_price_class == "PriceClass_200"
    assert (prod.tier, prod.enable_cloudfront, prod.enable_waf) == ("full-stack", True, True)
    assert prod.cloudfront_price_class == "PriceClass_All"
    assert [f.monthly_budget_limit for f in (dev, staging, prod)] == [10, 25, 50]
    assert [f.log_retention_days for f in (dev, staging, prod)] == [7, 30, 90]


def test_defaults_derive_names_from_repository(router_config):
    assert router_config.github_repo == REPO
    assert router_config.project_name == "static-site"
    assert router_config.project_short_name == "static-site"
    assert router_config.region == "us-east-1"
    assert router_config.audience == "sts.amazonaws.com"


def test_backend_names(router_config):
    dev = router_config.select("dev")
    assert router_config.state_bucket(dev) == "static-site-state-dev-111111111111"
    assert router_config.lock_table(dev) == "static-site-locks-dev"
    assert router_config.state_key(dev) == "workloads/static-site/dev/terraform.tfstate"
    assert router_config.website_bucket(dev) == "static-site-dev-111111111111"


def test_missing_repo_is_config_error():
    env = base_environ()
    del env["GITHUB_REPO"]
    with pytest.raises(ConfigError, match="GITHUB_REPO"):
        load_config(environ=env)


def test_accounts_file_layer(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(
        json.dumps(
            {
                "management": "999999999999",
                "dev": "444444444444",
                "staging": "555555555555",
                "prod": "666666666666",
            }
        ),
        encoding="utf-8",
    )
    config = load_config(environ={"GITHUB_REPO": REPO}, accounts_file=path)
    assert config.management_account_id == "999999999999"
    assert config.select("staging").account_id == "555555555555"


def test_environment_variables_override_accounts_file(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps({"dev": "444444444444"}), encoding="utf-8")
    config = load_config(
        environ={"GITHUB_REPO": REPO, "AWS_ACCOUNT_ID_DEV": "777777777777"},
        accounts_file=path,
    )
    assert config.select("dev").account_id == "777777777777"
    assert config.environments == [config.select("dev")]


def test_overlay_json_sets_refs_and_features():
    overlay = {
        "staging": {
            "refs": ["refs/heads/main", "refs/heads/release"],
            "features": {"enable_waf": "true", "waf_rate_limit": "2500"},
            "region": "eu-west-1",
        }
    }
    config = load_config(environ=base_environ(ROUTER_ENVIRONMENTS_JSON=json.dumps(overlay)))
    staging = config.select("staging")
    assert staging.trust.refs == ("refs/heads/main", "refs/heads/release")
    assert staging.features.enable_waf is True
    assert staging.features.waf_rate_limit == 2500
    assert staging.region == "eu-west-1"
    # Base layer is untouched.
    assert BASE_FEATURES["staging"].enable_waf is False


def test_overlay_cannot_enable_cloudfront_in_dev():
    overlay = {"dev": {"features": {"enable_cloudfront": True, "cloudfront_price_class": "PriceClass_100"}}}
    with pytest.raises(ConfigError, match="S3-only"):
        load_config(environ=base_environ(ROUTER_ENVIRONMENTS_JSON=json.dumps(overlay)))


def test_overlay_cannot_strip_prod_waf():
    overlay = {"prod": {"features": {"enable_waf": False}}}
    with pytest.raises(ConfigError, match="full stack"):
        load_config(environ=base_environ(ROUTER_ENVIRONMENTS_JSON=json.dumps(overlay)))


@pytest.mark.parametrize(
    "overlay, message",
    [
        ({"qa": {"accountId": "123456789012"}}, "unsupported environment"),
        ({"dev": {"bogus": 1}}, "unknown keys"),
        ({"dev": {"features": {"turbo": True}}}, "unknown feature flag"),
        ({"dev": {"features": {"waf_rate_limit": "many"}}}, "expected integer"),
        ({"dev": {"refs": "refs/heads/main"}}, "must be a list"),
    ],
)
def test_overlay_validation(overlay, message):
    with pytest.raises(ConfigError, match=message):
        load_config(environ=base_environ(ROUTER_ENVIRONMENTS_JSON=json.dumps(overlay)))


def test_wildcard_ref_is_rejected():
    overlay = {"dev": {"refs": ["refs/heads/*"]}}
    with pytest.raises(ConfigError, match="wildcards"):
        load_config(environ=base_environ(ROUTER_ENVIRONMENTS_JSON=json.dumps(overlay)))


def test_environment_account_cannot_be_management_account():
    with pytest.raises(ConfigError, match="management account"):
        load_config(environ=base_environ(AWS_ACCOUNT_ID_DEV="999999999999"))


def test_shared_account_is_config_error():
    with pytest.raises(ConfigError, match="share account"):
        load_config(environ=base_environ(AWS_ACCOUNT_ID_STAGING="111111111111"))


def test_invalid_overlay_json():
    with pytest.raises(ConfigError, match="ROUTER_ENVIRONMENTS_JSON"):
        load_config(environ=base_environ(ROUTER_ENVIRONMENTS_JSON="{nope"))


def test_accounts_document_round_trips(router_config):
    assert router_config.accounts_document() == {
        "management": "999999999999",
        "dev": "111111111111",
        "staging": "222222222222",
        "prod": "333333333333",
    }


def test_project_name_defaults_to_repository_name():
    config = load_config(environ=base_environ(GITHUB_REPO="Celtikill/static-site"))
    assert config.project_name == "static-site"
    dev = config.select("dev")
    assert config.state_bucket(dev) == "static-site-state-dev-111111111111"
    assert dev.role_arn.endswith(":role/GitHubActions-StaticSite-Dev-Role")


def test_accounts_document_omits_unset_management():
    config = load_config(environ=base_environ(MANAGEMENT_ACCOUNT_ID=""))
    assert "management" not in config.accounts_document()
