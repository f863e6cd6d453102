import json
import os
from pathlib import Path

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_dynamodb as ddb,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct

from access_router.config import RouterConfig

ROOT = Path(__file__).resolve().parents[1]


def broker_environment(config: RouterConfig, *, schema_version: str) -> dict[str, str]:
    """Lambda environment that reproduces `config` through load_config() at cold start."""

    overlay = {
        env.name: {
            "accountId": env.account_id,
            "roleArn": env.role_arn,
            "region": env.region,
            "refs": list(env.trust.refs),
            "features": env.features.as_dict(),
        }
        for env in config.environments
    }
    out = {
        "GITHUB_REPO": config.github_repo,
        "PROJECT_NAME": config.project_name,
        "PROJECT_SHORT_NAME": config.project_short_name,
        "ROUTER_ENVIRONMENTS_JSON": json.dumps(overlay, separators=(",", ":"), sort_keys=True),
        "SCHEMA_VERSION": schema_version,
        "CREDENTIALS_PATH": "/v1/credentials",
        "ENVIRONMENTS_PATH": "/v1/environments",
        "DEFAULT_TTL_SECONDS": "3600",
    }
    if config.management_account_id:
        out["MANAGEMENT_ACCOUNT_ID"] = config.management_account_id
    return out


class AccessRouterStack(Stack):
    """
    Deploy into the management account.

    Hosts the credential broker (Lambda + REST API) and the versioned state table
    used by the account factory.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        config: RouterConfig,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "retain").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        schema_version = "2026-10-01"
        name_prefix = f"{config.project_name}-router"

        state_table = ddb.Table(
            self,
            "RouterState",
            table_name=f"{name_prefix}-state",
            partition_key=ddb.Attribute(name="stateKey", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        lambda_execution_role = iam.Role(
            self,
            "BrokerLambdaExecutionRole",
            assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AWSLambdaBasicExecutionRole"
                )
            ],
        )

        broker_fn = _lambda.Function(
            self,
            "CredentialBroker",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="access_router.broker_handler.handler",
            # Ship only the library package; the handler imports it by name.
            code=_lambda.Code.from_asset(
                str(ROOT),
                exclude=["*", "!access_router", "!access_router/*.py"],
            ),
            timeout=Duration.seconds(10),
            role=lambda_execution_role,
            environment=broker_environment(config, schema_version=schema_version),
        )

        logs.LogGroup(
            self,
            "BrokerLogGroup",
            log_group_name=f"/aws/lambda/{broker_fn.function_name}",
            retention=logs.RetentionDays.ONE_MONTH,
            removal_policy=stateful_removal_policy,
        )
        access_log_group = logs.LogGroup(
            self,
            "ApiAccessLogGroup",
            retention=logs.RetentionDays.ONE_MONTH,
            removal_policy=stateful_removal_policy,
        )

        rest_api = apigw.RestApi(
            self,
            "AccessRouterApi",
            rest_api_name=f"{name_prefix}-api",
            deploy_options=apigw.StageOptions(
                stage_name=stage_name,
                access_log_destination=apigw.LogGroupLogDestination(access_log_group),
                # Standard fields only; do not log headers (e.g., Authorization).
                access_log_format=apigw.AccessLogFormat.json_with_standard_fields(
                    caller=True,
                    http_method=True,
                    ip=True,
                    protocol=True,
                    request_time=True,
                    resource_path=True,
                    response_length=True,
                    status=True,
                    user=True,
                ),
                throttling_rate_limit=10,
                throttling_burst_limit=20,
            ),
            cloud_watch_role=True,
        )

        integration = apigw.LambdaIntegration(broker_fn)
        v1 = rest_api.root.add_resource("v1")
        v1.add_resource("credentials").add_method(
            "POST",
            integration,
            authorization_type=apigw.AuthorizationType.NONE,
        )
        v1.add_resource("environments").add_method(
            "GET",
            integration,
            authorization_type=apigw.AuthorizationType.NONE,
        )

        CfnOutput(
            self,
            "CredentialsInvokeUrl",
            value=f"{rest_api.url}v1/credentials",
            description="Invoke URL for the credential broker.",
        )
        CfnOutput(
            self,
            "EnvironmentsInvokeUrl",
            value=f"{rest_api.url}v1/environments",
            description="Invoke URL listing registered environments.",
        )
        CfnOutput(
            self,
            "StateTableName",
            value=state_table.table_name,
            description="Versioned state table (ROUTER_STATE_TABLE for the CLI).",
        )
