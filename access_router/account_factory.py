from __future__ import annotations

import json
import sys
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

import boto3

from .config import DEFAULT_REFS, RouterConfig
from .environments import ENVIRONMENT_ORDER, role_name_for
from .errors import FactoryStepFailed, InvalidTransition, RouterError
from .state_store import StateRecord
from .trust import (
    GITHUB_OIDC_ISSUER,
    GITHUB_OIDC_THUMBPRINTS,
    TrustCondition,
    deployment_policy_document,
    oidc_provider_arn,
    trust_policy_document,
)

ORG_ACCESS_ROLE_NAME = "OrganizationAccountAccessRole"
WORKLOADS_OU_NAME = "Workloads"


class FactoryState(str, Enum):
    REQUESTED = "Requested"
    OU_ASSIGNED = "OUAssigned"
    ACCOUNT_CREATED = "AccountCreated"
    POLICY_ATTACHED = "PolicyAttached"
    TRUST_REGISTERED = "TrustRegistered"
    READY = "Ready"


STATE_ORDER = tuple(FactoryState)


def next_state(state: FactoryState) -> FactoryState | None:
    idx = STATE_ORDER.index(state)
    return STATE_ORDER[idx + 1] if idx + 1 < len(STATE_ORDER) else None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def factory_key(environment: str) -> str:
    return f"account-factory/{environment}"


@dataclass
class AccountRequest:
    environment: str
    account_name: str
    email: str
    ou_path: tuple[str, ...]
    state: FactoryState = FactoryState.REQUESTED
    account_id: str = ""
    ou_id: str = ""
    create_request_id: str = ""
    attached_policy_ids: list[str] = field(default_factory=list)
    oidc_provider_arn: str = ""
    role_arn: str = ""
    history: list[dict[str, str]] = field(default_factory=list)
    last_error: str = ""

    def advance_to(self, target: FactoryState, *, at: str | None = None) -> None:
        expected = next_state(self.state)
        if target != expected:
            raise InvalidTransition(
                f"{self.environment}: cannot move from {self.state.value} to {target.value}"
            )
        self.state = target
        self.last_error = ""
        self.history.append({"state": target.value, "at": at or _now_iso()})

    def to_dict(self) -> dict[str, Any]:
        doc = asdict(self)
        doc["state"] = self.state.value
        doc["ou_path"] = list(self.ou_path)
        return doc

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> "AccountRequest":
        data = dict(doc)
        data["state"] = FactoryState(data.get("state") or FactoryState.REQUESTED.value)
        data["ou_path"] = tuple(data.get("ou_path") or ())
        return cls(**data)


def _emit(event: dict[str, Any]) -> None:
    print(json.dumps(event, separators=(",", ":"), sort_keys=True), file=sys.stderr)


class AccountFactory:
    """
    Resumable account factory.

      Requested -> OUAssigned -> AccountCreated -> PolicyAttached -> TrustRegistered -> Ready

    Each step is attempted once per call. A failing step leaves the record at its
    last successful state with last_error set; there is no rollback. Calling
    advance()/run() again resumes from the stored state.
    """

    def __init__(
        self,
        config: RouterConfig,
        store: Any,
        *,
        organizations: Any = None,
        sts: Any = None,
        iam_for_account: Callable[[str], Any] | None = None,
        default_policy_ids: tuple[str, ...] | list[str] = (),
        sleep: Callable[[float], None] = time.sleep,
        poll_interval_seconds: float = 5.0,
        max_polls: int = 60,
        log: Callable[[dict[str, Any]], None] = _emit,
    ) -> None:
        self.config = config
        self.store = store
        self._org_client = organizations
        self._sts_client = sts
        self._iam_for_account = iam_for_account
        self.default_policy_ids = tuple(default_policy_ids)
        self._sleep = sleep
        self.poll_interval_seconds = poll_interval_seconds
        self.max_polls = max_polls
        self._log = log

    def _org(self) -> Any:
        if self._org_client is None:
            # Organizations is a global service homed in us-east-1.
            self._org_client = boto3.client("organizations", region_name="us-east-1")
        return self._org_client

    def _sts(self) -> Any:
        if self._sts_client is None:
            self._sts_client = boto3.client("sts", region_name=self.config.region)
        return self._sts_client

    def _iam(self, account_id: str, environment: str) -> Any:
        if self._iam_for_account is not None:
            return self._iam_for_account(account_id)
        out = self._sts().assume_role(
            RoleArn=f"arn:aws:iam::{account_id}:role/{ORG_ACCESS_ROLE_NAME}",
            RoleSessionName=f"account-factory-{environment}",
            DurationSeconds=900,
        )
        creds = out["Credentials"]
        return boto3.client(
            "iam",
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds["SessionToken"],
        )

    def _tags(self, environment: str) -> list[dict[str, str]]:
        return [
            {"Key": "Environment", "Value": environment},
            {"Key": "ManagedBy", "Value": "access-router"},
            {"Key": "Project", "Value": self.config.project_short_name},
            {"Key": "Repository", "Value": self.config.github_repo},
        ]

    def _trust_condition(self, environment: str) -> TrustCondition:
        if environment in self.config.selector:
            return self.config.select(environment).trust
        return TrustCondition(repository=self.config.github_repo, refs=DEFAULT_REFS)

    def _role_path_and_name(self, environment: str) -> tuple[str, str]:
        # A registered environment may override its role ARN; provision the role it routes to.
        if environment in self.config.selector:
            resource = self.config.select(environment).role_arn.split(":role/", 1)[1]
            path, _, name = resource.rpartition("/")
            return (f"/{path}/" if path else "/"), name
        return "/", role_name_for(self.config.project_short_name, environment)

    # Record persistence

    def _load(self, environment: str) -> tuple[AccountRequest, int]:
        rec: StateRecord | None = self.store.get(factory_key(environment))
        if rec is None:
            raise RouterError(f"no account factory request for {environment!r}")
        return AccountRequest.from_dict(rec.value), rec.version

    def _save(self, request: AccountRequest, version: int) -> int:
        rec = self.store.put(
            factory_key(request.environment), request.to_dict(), expected_version=version
        )
        return rec.version

    def status(self, environment: str) -> AccountRequest | None:
        rec = self.store.get(factory_key(environment))
        return AccountRequest.from_dict(rec.value) if rec else None

    def request(self, environment: str, *, email: str, account_name: str = "") -> AccountRequest:
        env = str(environment or "").strip().lower()
        if env not in ENVIRONMENT_ORDER:
            raise RouterError(f"unsupported environment {environment!r}")
        if "@" not in (email or ""):
            raise RouterError(f"invalid account email {email!r}")
        req = AccountRequest(
            environment=env,
            account_name=account_name or f"{self.config.project_short_name}-{env}",
            email=email,
            ou_path=(WORKLOADS_OU_NAME, self.config.github_repo.partition("/")[2]),
            history=[{"state": FactoryState.REQUESTED.value, "at": _now_iso()}],
        )
        self._save(req, 0)
        self._log({"event": "account_factory_requested", "environment": env, "state": req.state.value})
        return req

    # Steps

    _STEPS = {
        FactoryState.REQUESTED: "_assign_ou",
        FactoryState.OU_ASSIGNED: "_create_account",
        FactoryState.ACCOUNT_CREATED: "_attach_policies",
        FactoryState.POLICY_ATTACHED: "_register_trust",
        FactoryState.TRUST_REGISTERED: "_mark_ready",
    }

    def advance(self, environment: str) -> AccountRequest:
        req, version = self._load(environment)
        target = next_state(req.state)
        if target is None:
            return req
        step = self._STEPS[req.state]
        start = time.time()
        try:
            getattr(self, step)(req)
        except Exception as exc:
            req.last_error = f"{type(exc).__name__}: {exc}"
            self._save(req, version)
            self._log(
                {
                    "event": "account_factory_step",
                    "environment": req.environment,
                    "step": step.lstrip("_"),
                    "state": req.state.value,
                    "outcome": "error",
                    "error": {"type": type(exc).__name__, "message": str(exc)},
                    "duration_ms": int((time.time() - start) * 1000),
                }
            )
            raise FactoryStepFailed(req.environment, req.state.value, step.lstrip("_"), exc) from exc
        req.advance_to(target)
        self._save(req, version)
        self._log(
            {
                "event": "account_factory_step",
                "environment": req.environment,
                "step": step.lstrip("_"),
                "state": req.state.value,
                "outcome": "success",
                "duration_ms": int((time.time() - start) * 1000),
            }
        )
        return req

    def run(self, environment: str) -> AccountRequest:
        req, _ = self._load(environment)
        while req.state != FactoryState.READY:
            req = self.advance(environment)
        return req

    def _pages(self, method: Callable[..., dict[str, Any]], key: str, **kwargs: Any) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        token = ""
        while True:
            call_kwargs = dict(kwargs)
            if token:
                call_kwargs["NextToken"] = token
            resp = method(**call_kwargs)
            out.extend(resp.get(key) or [])
            token = str(resp.get("NextToken") or "")
            if not token:
                return out

    def _find_ou(self, parent_id: str, name: str) -> str:
        for ou in self._pages(
            self._org().list_organizational_units_for_parent,
            "OrganizationalUnits",
            ParentId=parent_id,
        ):
            if ou.get("Name") == name:
                return str(ou["Id"])
        return ""

    def _assign_ou(self, req: AccountRequest) -> None:
        org = self._org()
        roots = org.list_roots().get("Roots") or []
        if not roots:
            raise RouterError("no organization root found")
        parent = str(roots[0]["Id"])
        for name in req.ou_path:
            found = self._find_ou(parent, name)
            if not found:
                try:
                    out = org.create_organizational_unit(
                        ParentId=parent, Name=name, Tags=self._tags(req.environment)
                    )
                    found = str(out["OrganizationalUnit"]["Id"])
                except Exception as e:
                    if type(e).__name__ != "DuplicateOrganizationalUnitException":
                        raise
                    found = self._find_ou(parent, name)
                    if not found:
                        raise
            parent = found
        req.ou_id = parent

    def _find_account_by_email(self, email: str) -> str:
        for acct in self._pages(self._org().list_accounts, "Accounts"):
            if str(acct.get("Email") or "").lower() == email.lower():
                return str(acct["Id"])
        return ""

    def _wait_for_account(self, request_id: str) -> str:
        org = self._org()
        for _ in range(self.max_polls):
            status = org.describe_create_account_status(CreateAccountRequestId=request_id)
            st = status.get("CreateAccountStatus") or {}
            state = st.get("State")
            if state == "SUCCEEDED":
                return str(st["AccountId"])
            if state == "FAILED":
                raise RouterError(f"account creation failed: {st.get('FailureReason') or 'unknown'}")
            self._sleep(self.poll_interval_seconds)
        raise RouterError(f"timed out waiting for account creation request {request_id}")

    def _create_account(self, req: AccountRequest) -> None:
        org = self._org()
        account_id = req.account_id or self._find_account_by_email(req.email)
        if not account_id:
            if not req.create_request_id:
                out = org.create_account(
                    Email=req.email,
                    AccountName=req.account_name,
                    RoleName=ORG_ACCESS_ROLE_NAME,
                    IamUserAccessToBilling="DENY",
                    Tags=self._tags(req.environment),
                )
                req.create_request_id = str(out["CreateAccountStatus"]["Id"])
            account_id = self._wait_for_account(req.create_request_id)
        if any(e.account_id == account_id for e in self.config.environments if e.name != req.environment):
            raise RouterError(f"account {account_id} already serves another environment")
        req.account_id = account_id

        parents = org.list_parents(ChildId=account_id).get("Parents") or []
        current = str(parents[0]["Id"]) if parents else ""
        if current != req.ou_id:
            org.move_account(
                AccountId=account_id,
                SourceParentId=current,
                DestinationParentId=req.ou_id,
            )

    def _attach_policies(self, req: AccountRequest) -> None:
        org = self._org()
        for policy_id in self.default_policy_ids:
            if policy_id in req.attached_policy_ids:
                continue
            try:
                org.attach_policy(PolicyId=policy_id, TargetId=req.account_id)
            except Exception as e:
                if type(e).__name__ != "DuplicatePolicyAttachmentException":
                    raise
            req.attached_policy_ids.append(policy_id)

    def _register_trust(self, req: AccountRequest) -> None:
        iam = self._iam(req.account_id, req.environment)
        condition = self._trust_condition(req.environment)
        try:
            out = iam.create_open_id_connect_provider(
                Url=GITHUB_OIDC_ISSUER,
                ClientIDList=[condition.audience],
                ThumbprintList=list(GITHUB_OIDC_THUMBPRINTS),
                Tags=self._tags(req.environment),
            )
            req.oidc_provider_arn = str(out["OpenIDConnectProviderArn"])
        except Exception as e:
            if type(e).__name__ != "EntityAlreadyExistsException":
                raise
            req.oidc_provider_arn = oidc_provider_arn(req.account_id)

        role_path, role_name = self._role_path_and_name(req.environment)
        trust_doc = json.dumps(trust_policy_document(condition, account_id=req.account_id))
        try:
            out = iam.create_role(
                Path=role_path,
                RoleName=role_name,
                AssumeRolePolicyDocument=trust_doc,
                Description=f"GitHub Actions deployment role for {req.environment}",
                MaxSessionDuration=3600,
                Tags=self._tags(req.environment),
            )
            req.role_arn = str(out["Role"]["Arn"])
        except Exception as e:
            if type(e).__name__ != "EntityAlreadyExistsException":
                raise
            # One trust policy per account: reconcile the existing role to it.
            iam.update_assume_role_policy(RoleName=role_name, PolicyDocument=trust_doc)
            req.role_arn = str(iam.get_role(RoleName=role_name)["Role"]["Arn"])

        iam.put_role_policy(
            RoleName=role_name,
            PolicyName="DeploymentPolicy",
            PolicyDocument=json.dumps(
                deployment_policy_document(
                    project_name=self.config.project_name, environment=req.environment
                )
            ),
        )

    def _mark_ready(self, req: AccountRequest) -> None:
        if not (req.account_id and req.role_arn and req.oidc_provider_arn):
            raise RouterError("record is missing account id, role ARN or OIDC provider")


def accounts_document(config: RouterConfig, requests: list[AccountRequest]) -> dict[str, str]:
    """Bootstrap accounts.json content from the configured and factory-built accounts."""

    doc = config.accounts_document()
    for req in requests:
        if req.state == FactoryState.READY:
            doc[req.environment] = req.account_id
    return doc
