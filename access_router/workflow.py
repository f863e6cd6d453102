from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .config import RouterConfig
from .environments import ENVIRONMENT_ORDER, Environment
from .errors import RouterError, UnknownEnvironment
from .modules import ModulePlan, plan_modules


class InvalidRunInput(RouterError):
    error_code = "INVALID_INPUT"
    status_code = 400


def _input_bool(raw: Any, *, name: str) -> bool:
    if isinstance(raw, bool):
        return raw
    val = str(raw if raw is not None else "").strip().lower()
    if val == "true":
        return True
    if val in ("false", ""):
        return False
    raise InvalidRunInput(f"workflow input {name} must be true or false, got {raw!r}")


@dataclass(frozen=True)
class RunRequest:
    environment: str
    deploy_infrastructure: bool
    deploy_website: bool
    run_id: str = ""

    @classmethod
    def from_inputs(cls, inputs: Mapping[str, Any], *, run_id: str = "") -> "RunRequest":
        label = str(inputs.get("environment") or "").strip().lower()
        if label not in ENVIRONMENT_ORDER:
            raise UnknownEnvironment(label or str(inputs.get("environment")), ENVIRONMENT_ORDER)
        return cls(
            environment=label,
            deploy_infrastructure=_input_bool(
                inputs.get("deploy_infrastructure"), name="deploy_infrastructure"
            ),
            deploy_website=_input_bool(inputs.get("deploy_website"), name="deploy_website"),
            run_id=str(run_id or ""),
        )


@dataclass(frozen=True)
class RunPlan:
    request: RunRequest
    environment: Environment
    backend: Mapping[str, str]
    modules: ModulePlan | None
    website_bucket: str
    invalidate_cloudfront: bool

    def outputs(self) -> dict[str, str]:
        """Step outputs consumed by later workflow steps."""

        return {
            "environment": self.environment.name,
            "aws_account_id": self.environment.account_id,
            "aws_role_arn": self.environment.role_arn,
            "aws_region": self.environment.region,
            "deploy_infrastructure": str(self.request.deploy_infrastructure).lower(),
            "deploy_website": str(self.request.deploy_website).lower(),
            "state_bucket": self.backend["bucket"],
            "lock_table": self.backend["dynamodb_table"],
            "website_bucket": self.website_bucket,
            "invalidate_cloudfront": str(self.invalidate_cloudfront).lower(),
        }

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": "access-router.run-plan.v1",
            "runId": self.request.run_id,
            "environment": self.environment.summary(),
            "deployInfrastructure": self.request.deploy_infrastructure,
            "deployWebsite": self.request.deploy_website,
            "backend": dict(self.backend),
            "modules": self.modules.as_dict() if self.modules else None,
            "website": {
                "bucket": self.website_bucket,
                "invalidateCloudFront": self.invalidate_cloudfront,
            }
            if self.request.deploy_website
            else None,
        }


def route(request: RunRequest, config: RouterConfig) -> RunPlan:
    env = config.select(request.environment)
    backend = {
        "bucket": config.state_bucket(env),
        "key": config.state_key(env),
        "region": env.region,
        "dynamodb_table": config.lock_table(env),
        "encrypt": "true",
    }
    return RunPlan(
        request=request,
        environment=env,
        backend=backend,
        modules=plan_modules(env, config) if request.deploy_infrastructure else None,
        website_bucket=config.website_bucket(env) if request.deploy_website else "",
        invalidate_cloudfront=request.deploy_website and env.features.enable_cloudfront,
    )
