from __future__ import annotations

from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from .environments import Environment
from .errors import ConfigError

if TYPE_CHECKING:
    from .config import RouterConfig


class ModuleContractError(ConfigError):
    error_code = "MODULE_CONTRACT"


@dataclass(frozen=True)
class ModuleInput:
    name: str
    required: bool = True


@dataclass(frozen=True)
class ModuleSpec:
    name: str
    category: str
    version: str
    source: str
    inputs: tuple[ModuleInput, ...]
    outputs: tuple[str, ...]

    def input(self, name: str) -> ModuleInput | None:
        for inp in self.inputs:
            if inp.name == name:
                return inp
        return None


@dataclass(frozen=True)
class OutputRef:
    module: str
    output: str

    def render(self) -> str:
        return f"module.{self.module}.{self.output}"


@dataclass(frozen=True)
class ModuleInvocation:
    spec: ModuleSpec
    inputs: Mapping[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.spec.name

    def references(self) -> list[OutputRef]:
        return [v for v in self.inputs.values() if isinstance(v, OutputRef)]

    def rendered_inputs(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in sorted(self.inputs):
            val = self.inputs[key]
            if val is None:
                continue
            out[key] = val.render() if isinstance(val, OutputRef) else val
        return out

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.spec.name,
            "category": self.spec.category,
            "version": self.spec.version,
            "source": self.spec.source,
            "inputs": self.rendered_inputs(),
            "outputs": list(self.spec.outputs),
        }


def _spec(name: str, category: str, version: str, required: Iterable[str], optional: Iterable[str], outputs: Iterable[str]) -> ModuleSpec:
    inputs = tuple(ModuleInput(n) for n in required) + tuple(ModuleInput(n, required=False) for n in optional)
    return ModuleSpec(
        name=name,
        category=category,
        version=version,
        source=f"terraform/modules/{category}/{name}",
        inputs=inputs,
        outputs=tuple(outputs),
    )


CATALOG: Mapping[str, ModuleSpec] = MappingProxyType(
    {
        "kms": _spec(
            "kms",
            "security",
            "1.2.0",
            required=("alias", "deletion_window_days"),
            optional=("enable_key_rotation",),
            outputs=("key_id", "key_arn"),
        ),
        "s3-bucket": _spec(
            "s3-bucket",
            "storage",
            "2.1.0",
            required=("bucket_name", "kms_key_id", "force_destroy", "enable_replication"),
            optional=("replica_region",),
            outputs=("bucket_id", "bucket_arn", "bucket_regional_domain_name"),
        ),
        "waf": _spec(
            "waf",
            "security",
            "1.1.0",
            required=("web_acl_name", "rate_limit"),
            optional=(),
            outputs=("web_acl_id", "web_acl_arn"),
        ),
        "cloudfront": _spec(
            "cloudfront",
            "networking",
            "1.4.0",
            required=("origin_bucket_id", "origin_domain_name", "price_class"),
            optional=("web_acl_arn",),
            outputs=("distribution_id", "distribution_arn", "distribution_domain_name"),
        ),
        "monitoring": _spec(
            "monitoring",
            "observability",
            "1.3.0",
            required=(
                "project_name",
                "environment",
                "log_retention_days",
                "monthly_budget_limit",
                "enable_detailed_monitoring",
            ),
            optional=("kms_key_id", "distribution_id"),
            outputs=("alarm_topic_arn", "dashboard_name"),
        ),
    }
)


@dataclass(frozen=True)
class ModulePlan:
    environment: str
    tier: str
    invocations: tuple[ModuleInvocation, ...]

    @property
    def order(self) -> list[str]:
        return [inv.name for inv in self.invocations]

    def as_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "tier": self.tier,
            "order": self.order,
            "modules": [inv.as_dict() for inv in self.invocations],
        }


def order_invocations(invocations: Iterable[ModuleInvocation]) -> tuple[ModuleInvocation, ...]:
    """Validate invocations against their declared contracts and sort by dependency."""

    by_name: dict[str, ModuleInvocation] = {}
    for inv in invocations:
        if inv.name in by_name:
            raise ModuleContractError(f"module {inv.name!r} invoked twice")
        by_name[inv.name] = inv

    graph: dict[str, set[str]] = {}
    for inv in by_name.values():
        declared = {i.name for i in inv.spec.inputs}
        unknown = sorted(set(inv.inputs) - declared)
        if unknown:
            raise ModuleContractError(f"{inv.name}: undeclared inputs {unknown}")
        missing = sorted(
            i.name for i in inv.spec.inputs if i.required and inv.inputs.get(i.name) is None
        )
        if missing:
            raise ModuleContractError(f"{inv.name}: missing required inputs {missing}")
        deps: set[str] = set()
        for ref in inv.references():
            target = by_name.get(ref.module)
            if target is None:
                raise ModuleContractError(f"{inv.name}: references absent module {ref.module!r}")
            if ref.output not in target.spec.outputs:
                raise ModuleContractError(
                    f"{inv.name}: {ref.module!r} does not declare output {ref.output!r}"
                )
            deps.add(ref.module)
        graph[inv.name] = deps

    try:
        ordered = list(TopologicalSorter(graph).static_order())
    except CycleError as e:
        raise ModuleContractError(f"module references form a cycle: {e.args[1]}") from e
    return tuple(by_name[n] for n in ordered)


def plan_modules(environment: Environment, config: RouterConfig) -> ModulePlan:
    flags = environment.features
    name = environment.name
    prefix = config.project_name

    invocations = [
        ModuleInvocation(
            CATALOG["kms"],
            {
                "alias": f"alias/{prefix}-{name}",
                "deletion_window_days": 7 if flags.force_destroy_bucket else 30,
                "enable_key_rotation": True,
            },
        ),
        ModuleInvocation(
            CATALOG["s3-bucket"],
            {
                "bucket_name": config.website_bucket(environment),
                "kms_key_id": OutputRef("kms", "key_id"),
                "force_destroy": flags.force_destroy_bucket,
                "enable_replication": flags.enable_cross_region_replication,
                "replica_region": "us-west-2" if flags.enable_cross_region_replication else None,
            },
        ),
    ]
    if flags.enable_waf:
        invocations.append(
            ModuleInvocation(
                CATALOG["waf"],
                {"web_acl_name": f"{prefix}-{name}-waf", "rate_limit": flags.waf_rate_limit},
            )
        )
    if flags.enable_cloudfront:
        invocations.append(
            ModuleInvocation(
                CATALOG["cloudfront"],
                {
                    "origin_bucket_id": OutputRef("s3-bucket", "bucket_id"),
                    "origin_domain_name": OutputRef("s3-bucket", "bucket_regional_domain_name"),
                    "price_class": flags.cloudfront_price_class,
                    "web_acl_arn": OutputRef("waf", "web_acl_arn") if flags.enable_waf else None,
                },
            )
        )
    invocations.append(
        ModuleInvocation(
            CATALOG["monitoring"],
            {
                "project_name": prefix,
                "environment": name,
                "log_retention_days": flags.log_retention_days,
                "monthly_budget_limit": flags.monthly_budget_limit,
                "enable_detailed_monitoring": flags.enable_detailed_monitoring,
                "kms_key_id": OutputRef("kms", "key_id"),
                "distribution_id": (
                    OutputRef("cloudfront", "distribution_id") if flags.enable_cloudfront else None
                ),
            },
        )
    )
    return ModulePlan(
        environment=name,
        tier=flags.tier,
        invocations=order_invocations(invocations),
    )
