import pytest

from routerkit import base_environ

from access_router.config import load_config
from access_router.errors import UnknownEnvironment
from access_router.workflow import InvalidRunInput, RunRequest, route


def test_inputs_accept_strings_and_booleans():
    req = RunRequest.from_inputs(
        {"environment": "Staging", "deploy_infrastructure": "TRUE", "deploy_website": False},
        run_id="77",
    )
    assert req == RunRequest("staging", True, False, "77")


def test_missing_booleans_default_to_false():
    req = RunRequest.from_inputs({"environment": "dev"})
    assert (req.deploy_infrastructure, req.deploy_website) == (False, False)


def test_invalid_boolean_input():
    with pytest.raises(InvalidRunInput, match="deploy_website"):
        RunRequest.from_inputs({"environment": "dev", "deploy_website": "yes please"})


def test_unknown_environment_input():
    with pytest.raises(UnknownEnvironment):
        RunRequest.from_inputs({"environment": "qa"})


def test_route_resolves_everything_at_run_start(router_config):
    plan = route(RunRequest("staging", True, True, "77"), router_config)
    outputs = plan.outputs()
    assert outputs["aws_account_id"] == "222222222222"
    assert outputs["aws_role_arn"] == "arn:aws:iam::222222222222:role/GitHubActions-StaticSite-Staging-Role"
    assert outputs["aws_region"] == "us-east-1"
    assert outputs["state_bucket"] == "static-site-state-staging-222222222222"
    assert outputs["lock_table"] == "static-site-locks-staging"
    assert outputs["website_bucket"] == "static-site-staging-222222222222"
    assert outputs["invalidate_cloudfront"] == "true"
    assert plan.modules is not None
    assert "cloudfront" in plan.modules.order


def test_dev_website_deploy_skips_invalidation(router_config):
    plan = route(RunRequest("dev", False, True), router_config)
    assert plan.modules is None
    assert plan.invalidate_cloudfront is False
    doc = plan.as_dict()
    assert doc["kind"] == "access-router.run-plan.v1"
    assert doc["website"] == {"bucket": "static-site-dev-111111111111", "invalidateCloudFront": False}


def test_infrastructure_only_run_has_no_website(router_config):
    plan = route(RunRequest("prod", True, False), router_config)
    assert plan.as_dict()["website"] is None
    assert plan.outputs()["website_bucket"] == ""
    assert plan.backend["encrypt"] == "true"


def test_route_requires_a_registered_environment():
    config = load_config(environ=base_environ(AWS_ACCOUNT_ID_PROD=""))
    with pytest.raises(UnknownEnvironment):
        route(RunRequest("prod", True, False), config)
