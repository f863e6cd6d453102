from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .errors import UnknownEnvironment
from .trust import TrustCondition

ENVIRONMENT_ORDER = ("dev", "staging", "prod")

_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
_ROLE_ARN_RE = re.compile(r"^arn:aws[a-z-]*:iam::(\d{12}):role/[\w+=,.@/-]+$")


@dataclass(frozen=True)
class FeatureFlags:
    tier: str
    enable_cloudfront: bool
    enable_waf: bool
    cloudfront_price_class: str
    waf_rate_limit: int
    enable_cross_region_replication: bool
    enable_detailed_monitoring: bool
    force_destroy_bucket: bool
    monthly_budget_limit: int
    log_retention_days: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Environment:
    name: str
    account_id: str
    role_arn: str
    region: str
    features: FeatureFlags
    trust: TrustCondition

    def __post_init__(self) -> None:
        if not _ACCOUNT_ID_RE.match(self.account_id or ""):
            raise ValueError(f"{self.name}: account id must be 12 digits, got {self.account_id!r}")
        m = _ROLE_ARN_RE.match(self.role_arn or "")
        if not m:
            raise ValueError(f"{self.name}: invalid role ARN {self.role_arn!r}")
        if m.group(1) != self.account_id:
            raise ValueError(
                f"{self.name}: role ARN {self.role_arn!r} is not in account {self.account_id}"
            )

    def summary(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "accountId": self.account_id,
            "roleArn": self.role_arn,
            "region": self.region,
            "features": self.features.as_dict(),
            "trust": {
                "repository": self.trust.repository,
                "refs": list(self.trust.refs),
                "audience": self.trust.audience,
                "subjects": list(self.trust.subjects),
            },
        }


def title_case(raw: str) -> str:
    # "static-site" -> "StaticSite", matching the bootstrap role names.
    return "".join(p[:1].upper() + p[1:] for p in raw.split("-"))


def role_name_for(project_short_name: str, environment: str) -> str:
    return f"GitHubActions-{title_case(project_short_name)}-{title_case(environment)}-Role"


def role_arn_for(account_id: str, project_short_name: str, environment: str) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name_for(project_short_name, environment)}"


def _canonical_order(names: Iterable[str]) -> list[str]:
    known = [n for n in ENVIRONMENT_ORDER if n in names]
    extra = sorted(n for n in names if n not in ENVIRONMENT_ORDER)
    return known + extra


class EnvironmentSelector:
    """Pure lookup from an environment label to its registered record."""

    def __init__(self, environments: Mapping[str, Environment] | Iterable[Environment]) -> None:
        if isinstance(environments, Mapping):
            items = list(environments.values())
        else:
            items = list(environments)
        by_name: dict[str, Environment] = {}
        seen_accounts: dict[str, str] = {}
        for env in items:
            if env.name in by_name:
                raise ValueError(f"environment registered twice: {env.name}")
            other = seen_accounts.get(env.account_id)
            if other:
                raise ValueError(
                    f"environments {other!r} and {env.name!r} share account {env.account_id}"
                )
            seen_accounts[env.account_id] = env.name
            by_name[env.name] = env
        self._by_name = MappingProxyType(by_name)

    def labels(self) -> list[str]:
        return _canonical_order(self._by_name.keys())

    def select(self, label: str) -> Environment:
        key = str(label or "").strip().lower()
        env = self._by_name.get(key)
        if env is None:
            raise UnknownEnvironment(str(label), self.labels())
        return env

    def __contains__(self, label: object) -> bool:
        return isinstance(label, str) and label.strip().lower() in self._by_name

    def __iter__(self):
        return iter(self._by_name[n] for n in self.labels())

    def __len__(self) -> int:
        return len(self._by_name)
