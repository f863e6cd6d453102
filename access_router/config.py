from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from .environments import (
    ENVIRONMENT_ORDER,
    Environment,
    EnvironmentSelector,
    FeatureFlags,
    role_arn_for,
)
from .errors import ConfigError
from .trust import DEFAULT_AUDIENCE, TrustCondition

DEFAULT_REGION = "us-east-1"
DEFAULT_REFS = ("refs/heads/main",)

# Base layer. dev is S3-only, staging adds CloudFront, prod is the full stack.
BASE_FEATURES: dict[str, FeatureFlags] = {
    "dev": FeatureFlags(
        tier="s3-only",
        enable_cloudfront=False,
        enable_waf=False,
        cloudfront_price_class="",
        waf_rate_limit=1000,
        enable_cross_region_replication=False,
        enable_detailed_monitoring=False,
        force_destroy_bucket=True,
        monthly_budget_limit=10,
        log_retention_days=7,
    ),
    "staging": FeatureFlags(
        tier="cloudfront-s3",
        enable_cloudfront=True,
        enable_waf=False,
        cloudfront_price_class="PriceClass_200",
        waf_rate_limit=2000,
        enable_cross_region_replication=True,
        enable_detailed_monitoring=True,
        force_destroy_bucket=False,
        monthly_budget_limit=25,
        log_retention_days=30,
    ),
    "prod": FeatureFlags(
        tier="full-stack",
        enable_cloudfront=True,
        enable_waf=True,
        cloudfront_price_class="PriceClass_All",
        waf_rate_limit=5000,
        enable_cross_region_replication=True,
        enable_detailed_monitoring=True,
        force_destroy_bucket=False,
        monthly_budget_limit=50,
        log_retention_days=90,
    ),
}

_FEATURE_TYPES = {f.name: f.type for f in fields(FeatureFlags)}
_OVERLAY_KEYS = {"accountId", "roleArn", "region", "refs", "features"}


@dataclass(frozen=True)
class RouterConfig:
    github_repo: str
    project_name: str
    project_short_name: str
    region: str
    management_account_id: str
    audience: str
    selector: EnvironmentSelector

    def select(self, label: str) -> Environment:
        return self.selector.select(label)

    @property
    def environments(self) -> list[Environment]:
        return list(self.selector)

    def state_bucket(self, env: Environment) -> str:
        return f"{self.project_name}-state-{env.name}-{env.account_id}"

    def state_key(self, env: Environment) -> str:
        return f"workloads/{self.project_short_name}/{env.name}/terraform.tfstate"

    def lock_table(self, env: Environment) -> str:
        return f"{self.project_name}-locks-{env.name}"

    def website_bucket(self, env: Environment) -> str:
        return f"{self.project_name}-{env.name}-{env.account_id}"

    def accounts_document(self) -> dict[str, str]:
        """Bootstrap accounts.json layout for the registered environments."""

        doc: dict[str, str] = {}
        if self.management_account_id:
            doc["management"] = self.management_account_id
        for env in self.environments:
            doc[env.name] = env.account_id
        return doc


def _parse_bool(raw: Any, *, label: str) -> bool:
    if isinstance(raw, bool):
        return raw
    val = str(raw).strip().lower()
    if val in {"true", "1", "yes"}:
        return True
    if val in {"false", "0", "no"}:
        return False
    raise ConfigError(f"{label}: expected boolean, got {raw!r}")


def _coerce_feature(name: str, key: str, raw: Any) -> Any:
    kind = _FEATURE_TYPES.get(key)
    label = f"{name}.features.{key}"
    if kind is None:
        raise ConfigError(f"{label}: unknown feature flag")
    if kind == "bool":
        return _parse_bool(raw, label=label)
    if kind == "int":
        if isinstance(raw, bool):
            raise ConfigError(f"{label}: expected integer, got {raw!r}")
        try:
            return int(raw)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{label}: expected integer, got {raw!r}") from e
    return str(raw)


def _check_tier_invariants(name: str, flags: FeatureFlags) -> None:
    if name == "dev" and flags.enable_cloudfront:
        raise ConfigError("dev must stay S3-only (enable_cloudfront=false)")
    if name == "prod" and not (flags.enable_cloudfront and flags.enable_waf):
        raise ConfigError("prod must run the full stack (CloudFront and WAF enabled)")
    if flags.enable_waf and not flags.enable_cloudfront:
        raise ConfigError(f"{name}: WAF requires CloudFront")
    if flags.enable_cloudfront and not flags.cloudfront_price_class:
        raise ConfigError(f"{name}: CloudFront needs a cloudfront_price_class")


def _merge_overlay(layers: dict[str, dict[str, Any]], overlay: Any, *, source: str) -> None:
    if not isinstance(overlay, dict):
        raise ConfigError(f"{source}: expected JSON object of environments")
    for raw_name, raw_entry in overlay.items():
        name = str(raw_name).strip().lower()
        if name not in layers:
            raise ConfigError(f"{source}: unsupported environment {raw_name!r}")
        if not isinstance(raw_entry, dict):
            raise ConfigError(f"{source}: {name} must be a JSON object")
        unknown = set(raw_entry) - _OVERLAY_KEYS
        if unknown:
            raise ConfigError(f"{source}: {name} has unknown keys {sorted(unknown)}")
        layer = layers[name]
        for key in ("accountId", "roleArn", "region"):
            if key in raw_entry:
                layer[key] = str(raw_entry[key] or "").strip()
        if "refs" in raw_entry:
            refs = raw_entry["refs"]
            if isinstance(refs, str) or not isinstance(refs, list):
                raise ConfigError(f"{source}: {name}.refs must be a list")
            layer["refs"] = tuple(str(r).strip() for r in refs if str(r).strip())
        if "features" in raw_entry:
            feats = raw_entry["features"]
            if not isinstance(feats, dict):
                raise ConfigError(f"{source}: {name}.features must be an object")
            for key, val in feats.items():
                layer["features"][key] = _coerce_feature(name, key, val)


def _read_accounts_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"accounts file not found: {path}")
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ConfigError(f"invalid accounts file {path}: {e}") from e
    if not isinstance(doc, dict):
        raise ConfigError(f"invalid accounts file {path}: expected JSON object")
    return doc


def _accounts_file_overlay(doc: dict[str, Any]) -> dict[str, Any]:
    # Accept the flat bootstrap layout {"management": ..., "dev": ...} as well as
    # the richer {"environments": {"dev": {...}}} layout.
    overlay: dict[str, Any] = {}
    for name in ENVIRONMENT_ORDER:
        acct = str(doc.get(name) or "").strip()
        if acct:
            overlay[name] = {"accountId": acct}
    envs = doc.get("environments")
    if isinstance(envs, dict):
        for name, entry in envs.items():
            base = overlay.setdefault(str(name).strip().lower(), {})
            if isinstance(entry, dict):
                base.update(entry)
            else:
                overlay[str(name).strip().lower()] = entry
    return overlay


def load_config(
    *,
    environ: Mapping[str, str] | None = None,
    accounts_file: str | Path | None = None,
) -> RouterConfig:
    """
    Resolve the layered configuration once.

    Layers, lowest first:
      1. base defaults (feature tier table, default refs, naming)
      2. accounts file (bootstrap accounts.json)
      3. process environment (AWS_ACCOUNT_ID_<ENV>, ROUTER_ENVIRONMENTS_JSON, ...)

    The result is immutable; a run never mutates it.
    """

    env_vars = os.environ if environ is None else environ

    def var(name: str) -> str:
        return str(env_vars.get(name) or "").strip()

    layers: dict[str, dict[str, Any]] = {
        name: {
            "accountId": "",
            "roleArn": "",
            "region": "",
            "refs": DEFAULT_REFS,
            "features": BASE_FEATURES[name].as_dict(),
        }
        for name in ENVIRONMENT_ORDER
    }

    file_doc: dict[str, Any] = {}
    path_raw = str(accounts_file or "").strip() or var("ROUTER_ACCOUNTS_FILE")
    if path_raw:
        path = Path(path_raw)
        file_doc = _read_accounts_file(path)
        _merge_overlay(layers, _accounts_file_overlay(file_doc), source=str(path))

    for name in ENVIRONMENT_ORDER:
        acct = var(f"AWS_ACCOUNT_ID_{name.upper()}")
        if acct:
            layers[name]["accountId"] = acct
    overlay_raw = var("ROUTER_ENVIRONMENTS_JSON")
    if overlay_raw:
        try:
            overlay = json.loads(overlay_raw)
        except ValueError as e:
            raise ConfigError(f"invalid ROUTER_ENVIRONMENTS_JSON: {e}") from e
        _merge_overlay(layers, overlay, source="ROUTER_ENVIRONMENTS_JSON")

    github_repo = var("GITHUB_REPO") or str(file_doc.get("githubRepo") or "").strip()
    if not github_repo:
        raise ConfigError("missing GITHUB_REPO (owner/name of the deploying repository)")
    repo_name = github_repo.partition("/")[2]
    project_short_name = var("PROJECT_SHORT_NAME") or repo_name
    project_name = var("PROJECT_NAME") or repo_name
    region = var("AWS_DEFAULT_REGION") or DEFAULT_REGION
    management_account_id = var("MANAGEMENT_ACCOUNT_ID") or str(
        file_doc.get("management") or ""
    ).strip()

    registered: list[Environment] = []
    for name in ENVIRONMENT_ORDER:
        layer = layers[name]
        account_id = layer["accountId"]
        if not account_id:
            continue
        flags = FeatureFlags(**layer["features"])
        _check_tier_invariants(name, flags)
        try:
            trust = TrustCondition(
                repository=github_repo,
                refs=tuple(layer["refs"]),
                audience=DEFAULT_AUDIENCE,
            )
            registered.append(
                Environment(
                    name=name,
                    account_id=account_id,
                    role_arn=layer["roleArn"] or role_arn_for(account_id, project_short_name, name),
                    region=layer["region"] or region,
                    features=flags,
                    trust=trust,
                )
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e

    if management_account_id and any(e.account_id == management_account_id for e in registered):
        raise ConfigError("environment accounts must be separate from the management account")
    try:
        selector = EnvironmentSelector(registered)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    return RouterConfig(
        github_repo=github_repo,
        project_name=project_name,
        project_short_name=project_short_name,
        region=region,
        management_account_id=management_account_id,
        audience=DEFAULT_AUDIENCE,
        selector=selector,
    )
