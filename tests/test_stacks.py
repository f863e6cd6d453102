import json

import pytest
from aws_cdk import App
from aws_cdk import assertions

from routerkit import ACCOUNTS, REPO, base_environ

from access_router.config import load_config
from stacks.access_router_stack import AccessRouterStack, broker_environment
from stacks.environment_access_stack import EnvironmentAccessStack
from stacks.workloads_guardrail_stack import WorkloadsGuardrailStack


def _template(stack) -> dict:
    return assertions.Template.from_stack(
        stack, skip_cyclical_dependencies_check=True
    ).to_json()


def _resources(template: dict, resource_type: str) -> list[dict]:
    return [
        resource
        for resource in template["Resources"].values()
        if resource.get("Type") == resource_type
    ]


def _find_resource(template: dict, resource_type: str) -> dict:
    found = _resources(template, resource_type)
    assert len(found) == 1, f"expected one {resource_type}, found {len(found)}"
    return found[0]


def _environment_access_template(env_name: str, **environ) -> dict:
    config = load_config(environ=base_environ(**environ))
    app = App()
    stack = EnvironmentAccessStack(
        app,
        f"{env_name}-access-test",
        environment=config.select(env_name),
        project_name=config.project_name,
    )
    return _template(stack)


def test_environment_access_role_trusts_only_configured_subject():
    template = _environment_access_template("prod")

    provider = _find_resource(template, "AWS::IAM::OIDCProvider")
    assert provider["Properties"]["Url"] == "https://token.actions.githubusercontent.com"
    assert provider["Properties"]["ClientIdList"] == ["sts.amazonaws.com"]

    role = _find_resource(template, "AWS::IAM::Role")
    props = role["Properties"]
    assert props["RoleName"] == "GitHubActions-StaticSite-Prod-Role"
    assert props["MaxSessionDuration"] == 3600

    (statement,) = props["AssumeRolePolicyDocument"]["Statement"]
    assert statement["Action"] == "sts:AssumeRoleWithWebIdentity"
    assert "Fn::GetAtt" in statement["Principal"]["Federated"]
    assert statement["Condition"] == {
        "StringEquals": {
            "token.actions.githubusercontent.com:aud": "sts.amazonaws.com",
            "token.actions.githubusercontent.com:sub": f"repo:{REPO}:ref:refs/heads/main",
        }
    }
    assert "StringLike" not in json.dumps(statement)


def test_environment_access_role_lists_every_configured_ref():
    overlay = json.dumps({"staging": {"refs": ["refs/heads/main", "refs/heads/release"]}})
    template = _environment_access_template("staging", ROUTER_ENVIRONMENTS_JSON=overlay)

    role = _find_resource(template, "AWS::IAM::Role")
    (statement,) = role["Properties"]["AssumeRolePolicyDocument"]["Statement"]
    assert statement["Condition"]["StringEquals"]["token.actions.githubusercontent.com:sub"] == [
        f"repo:{REPO}:ref:refs/heads/main",
        f"repo:{REPO}:ref:refs/heads/release",
    ]


def test_environment_access_role_has_scoped_deployment_policy():
    template = _environment_access_template("dev")

    role = _find_resource(template, "AWS::IAM::Role")
    (policy,) = role["Properties"]["Policies"]
    assert policy["PolicyName"] == "DeploymentPolicy"
    sids = {s.get("Sid") for s in policy["PolicyDocument"]["Statement"]}
    assert {"StateBucketAccess", "LockTableAccess", "WebsiteBucketManagement"} <= sids
    for statement in policy["PolicyDocument"]["Statement"]:
        assert statement["Effect"] == "Allow"
        actions = statement["Action"] if isinstance(statement["Action"], list) else [statement["Action"]]
        assert "*" not in actions
        assert not any(a.startswith("iam:") for a in actions)


def _router_template(monkeypatch, mode: str | None = None) -> dict:
    if mode is None:
        monkeypatch.delenv("DATA_RETENTION_MODE", raising=False)
    else:
        monkeypatch.setenv("DATA_RETENTION_MODE", mode)
    config = load_config(environ=base_environ())
    app = App()
    stack = AccessRouterStack(app, "AccessRouterTestStack", config=config)
    return _template(stack)


def test_router_stack_broker_function(monkeypatch):
    template = _router_template(monkeypatch)

    fn = _find_resource(template, "AWS::Lambda::Function")
    props = fn["Properties"]
    assert props["Handler"] == "access_router.broker_handler.handler"
    assert props["Runtime"] == "python3.12"

    variables = props["Environment"]["Variables"]
    assert variables["GITHUB_REPO"] == REPO
    overlay = json.loads(variables["ROUTER_ENVIRONMENTS_JSON"])
    assert {name: entry["accountId"] for name, entry in overlay.items()} == ACCOUNTS
    assert overlay["dev"]["features"]["enable_cloudfront"] is False


def test_router_stack_state_table(monkeypatch):
    template = _router_template(monkeypatch)

    table = _find_resource(template, "AWS::DynamoDB::Table")
    assert table["DeletionPolicy"] == "Retain"
    props = table["Properties"]
    assert props["TableName"] == "static-site-router-state"
    assert props["KeySchema"] == [{"AttributeName": "stateKey", "KeyType": "HASH"}]
    assert props["PointInTimeRecoverySpecification"]["PointInTimeRecoveryEnabled"] is True


def test_router_stack_destroy_mode(monkeypatch):
    template = _router_template(monkeypatch, mode="destroy")

    assert _find_resource(template, "AWS::DynamoDB::Table")["DeletionPolicy"] == "Delete"
    assert {r.get("DeletionPolicy") for r in _resources(template, "AWS::Logs::LogGroup")} == {"Delete"}


def test_router_stack_rejects_unknown_retention_mode(monkeypatch):
    with pytest.raises(ValueError, match="DATA_RETENTION_MODE"):
        _router_template(monkeypatch, mode="keep")


def test_router_stack_api_methods(monkeypatch):
    template = _router_template(monkeypatch)

    methods = sorted(
        m["Properties"]["HttpMethod"] for m in _resources(template, "AWS::ApiGateway::Method")
    )
    assert methods == ["GET", "POST"]
    for method in _resources(template, "AWS::ApiGateway::Method"):
        assert method["Properties"]["AuthorizationType"] == "NONE"


def test_broker_environment_round_trips_through_load_config():
    config = load_config(environ=base_environ())
    env_vars = broker_environment(config, schema_version="test")

    reloaded = load_config(environ=env_vars)
    assert [e.summary() for e in reloaded.environments] == [e.summary() for e in config.environments]
    assert reloaded.management_account_id == config.management_account_id


def test_guardrail_stack_attaches_scps_to_workloads_ou():
    app = App()
    stack = WorkloadsGuardrailStack(app, "GuardrailTestStack", target_ou_id="ou-abcd-12345678")
    template = _template(stack)

    policies = _resources(template, "AWS::Organizations::Policy")
    assert len(policies) == 2
    for policy in policies:
        props = policy["Properties"]
        assert props["Type"] == "SERVICE_CONTROL_POLICY"
        assert props["TargetIds"] == ["ou-abcd-12345678"]
        for statement in props["Content"]["Statement"]:
            assert statement["Effect"] == "Deny"

    tampering = next(p for p in policies if p["Properties"]["Name"] == "Workloads-DenyTrustTampering")
    sids = {s["Sid"] for s in tampering["Properties"]["Content"]["Statement"]}
    assert sids == {"DenyOidcProviderTampering", "DenyDeploymentRoleTrustEdits"}


def test_guardrail_stack_requires_ou_id():
    app = App()
    with pytest.raises(ValueError, match="target_ou_id"):
        WorkloadsGuardrailStack(app, "GuardrailBadOu", target_ou_id="r-abcd")
