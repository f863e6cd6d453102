#!/usr/bin/env python3
import os

import aws_cdk as cdk

from access_router.config import load_config
from access_router.environments import title_case
from stacks.access_router_stack import AccessRouterStack
from stacks.environment_access_stack import EnvironmentAccessStack
from stacks.workloads_guardrail_stack import WorkloadsGuardrailStack

app = cdk.App()

config = load_config()
management_account = config.management_account_id or os.getenv("CDK_DEFAULT_ACCOUNT")

AccessRouterStack(
    app,
    os.getenv("CDK_STACK_NAME", "AccessRouterStack"),
    config=config,
    env=cdk.Environment(account=management_account, region=config.region),
)

for environment in config.environments:
    EnvironmentAccessStack(
        app,
        f"{title_case(config.project_short_name)}-{title_case(environment.name)}-Access",
        environment=environment,
        project_name=config.project_name,
        env=cdk.Environment(account=environment.account_id, region=environment.region),
    )

workloads_ou_id = (os.getenv("WORKLOADS_OU_ID") or "").strip()
if workloads_ou_id:
    WorkloadsGuardrailStack(
        app,
        os.getenv("GUARDRAIL_STACK_NAME", "WorkloadsGuardrailStack"),
        target_ou_id=workloads_ou_id,
        env=cdk.Environment(account=management_account, region="us-east-1"),
    )

app.synth()
