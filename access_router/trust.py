from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import TrustDenied

GITHUB_OIDC_HOST = "token.actions.githubusercontent.com"
GITHUB_OIDC_ISSUER = f"https://{GITHUB_OIDC_HOST}"
DEFAULT_AUDIENCE = "sts.amazonaws.com"
# Published SHA-1 fingerprints of the token.actions.githubusercontent.com chain.
GITHUB_OIDC_THUMBPRINTS = (
    "6938fd4d98bab03faadb97b34396831e3780aea1",
    "1b511abead59b0b54b0a1c8232661093315d1fca",
)


def subject_for(repository: str, ref: str) -> str:
    return f"repo:{repository}:ref:{ref}"


def parse_subject(sub: str) -> tuple[str, str]:
    """
    Split a GitHub Actions subject into (repository, ref).

      repo:Owner/static-site:ref:refs/heads/main -> ("Owner/static-site", "refs/heads/main")

    Subjects of any other shape (environment- or pull_request-scoped) return ("", "").
    """

    raw = str(sub or "")
    if not raw.startswith("repo:"):
        return "", ""
    rest = raw[len("repo:"):]
    marker = ":ref:"
    if marker not in rest:
        return "", ""
    repository, ref = rest.split(marker, 1)
    if "/" not in repository or not ref:
        return "", ""
    return repository, ref


@dataclass(frozen=True)
class TrustCondition:
    repository: str
    refs: tuple[str, ...]
    audience: str = DEFAULT_AUDIENCE
    issuer: str = GITHUB_OIDC_ISSUER

    def __post_init__(self) -> None:
        owner, _, name = self.repository.partition("/")
        if not owner or not name or "/" in name or "*" in self.repository:
            raise ValueError(f"repository must be owner/name without wildcards: {self.repository!r}")
        if not self.refs:
            raise ValueError("trust condition needs at least one ref")
        for ref in self.refs:
            if not ref.startswith("refs/") or "*" in ref:
                raise ValueError(f"ref must be a full refs/... name without wildcards: {ref!r}")

    @property
    def subjects(self) -> tuple[str, ...]:
        return tuple(subject_for(self.repository, ref) for ref in self.refs)

    def check(self, claims: dict[str, Any]) -> None:
        """Raise TrustDenied unless every trust-relevant claim matches exactly."""

        iss = str(claims.get("iss") or "")
        if iss != self.issuer:
            raise TrustDenied(f"issuer {iss!r} is not trusted")

        aud = claims.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if len(aud) == 1 else None
        if aud != self.audience:
            raise TrustDenied(f"audience {aud!r} does not match {self.audience!r}")

        sub = str(claims.get("sub") or "")
        if sub not in self.subjects:
            raise TrustDenied(f"subject {sub!r} is not trusted by this role")

        # Subject already pins repo + ref; the discrete claims must agree with it.
        sub_repository, sub_ref = parse_subject(sub)
        repository = claims.get("repository")
        if repository is not None and repository != sub_repository:
            raise TrustDenied("repository claim disagrees with subject")
        ref = claims.get("ref")
        if ref is not None and ref != sub_ref:
            raise TrustDenied("ref claim disagrees with subject")

    def matches(self, claims: dict[str, Any]) -> bool:
        try:
            self.check(claims)
        except TrustDenied:
            return False
        return True


def oidc_provider_arn(account_id: str) -> str:
    return f"arn:aws:iam::{account_id}:oidc-provider/{GITHUB_OIDC_HOST}"


def trust_conditions(condition: TrustCondition) -> dict[str, Any]:
    subjects = list(condition.subjects)
    return {
        "StringEquals": {
            f"{GITHUB_OIDC_HOST}:aud": condition.audience,
            f"{GITHUB_OIDC_HOST}:sub": subjects[0] if len(subjects) == 1 else subjects,
        }
    }


def trust_policy_document(condition: TrustCondition, *, account_id: str) -> dict[str, Any]:
    # StringEquals only: a StringLike "repo:owner/name:*" would admit every branch and PR.
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": oidc_provider_arn(account_id)},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": trust_conditions(condition),
            }
        ],
    }


def deployment_policy_document(*, project_name: str, environment: str) -> dict[str, Any]:
    prefix = project_name.strip()
    if not prefix:
        raise ValueError("project_name is required")
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "StateBucketAccess",
                "Effect": "Allow",
                "Action": [
                    "s3:ListBucket",
                    "s3:GetObject",
                    "s3:PutObject",
                    "s3:DeleteObject",
                    "s3:GetBucketVersioning",
                    "s3:GetBucketLocation",
                ],
                "Resource": [
                    f"arn:aws:s3:::{prefix}-state-{environment}-*",
                    f"arn:aws:s3:::{prefix}-state-{environment}-*/*",
                ],
            },
            {
                "Sid": "LockTableAccess",
                "Effect": "Allow",
                "Action": [
                    "dynamodb:DescribeTable",
                    "dynamodb:GetItem",
                    "dynamodb:PutItem",
                    "dynamodb:DeleteItem",
                ],
                "Resource": f"arn:aws:dynamodb:*:*:table/{prefix}-locks-{environment}",
            },
            {
                "Sid": "WebsiteBucketManagement",
                "Effect": "Allow",
                "Action": [
                    "s3:CreateBucket",
                    "s3:DeleteBucket",
                    "s3:GetBucket*",
                    "s3:PutBucket*",
                    "s3:GetReplicationConfiguration",
                    "s3:PutReplicationConfiguration",
                    "s3:GetEncryptionConfiguration",
                    "s3:PutEncryptionConfiguration",
                    "s3:ListBucket",
                    "s3:GetObject",
                    "s3:PutObject",
                    "s3:DeleteObject",
                ],
                "Resource": [
                    f"arn:aws:s3:::{prefix}-*",
                    f"arn:aws:s3:::{prefix}-*/*",
                ],
            },
            {
                "Sid": "EdgeManagement",
                "Effect": "Allow",
                "Action": [
                    "cloudfront:*Distribution*",
                    "cloudfront:*Invalidation*",
                    "cloudfront:*OriginAccessControl*",
                    "cloudfront:*ResponseHeadersPolicy*",
                    "cloudfront:TagResource",
                    "cloudfront:UntagResource",
                    "wafv2:*WebACL*",
                    "wafv2:ListTagsForResource",
                    "wafv2:TagResource",
                    "wafv2:UntagResource",
                ],
                "Resource": "*",
            },
            {
                "Sid": "KeyManagement",
                "Effect": "Allow",
                "Action": [
                    "kms:CreateKey",
                    "kms:CreateAlias",
                    "kms:DeleteAlias",
                    "kms:DescribeKey",
                    "kms:EnableKeyRotation",
                    "kms:GetKeyPolicy",
                    "kms:GetKeyRotationStatus",
                    "kms:ListAliases",
                    "kms:ListResourceTags",
                    "kms:PutKeyPolicy",
                    "kms:ScheduleKeyDeletion",
                    "kms:TagResource",
                    "kms:Encrypt",
                    "kms:Decrypt",
                    "kms:GenerateDataKey",
                ],
                "Resource": "*",
            },
            {
                "Sid": "Observability",
                "Effect": "Allow",
                "Action": [
                    "cloudwatch:*Alarm*",
                    "cloudwatch:*Dashboard*",
                    "cloudwatch:ListTagsForResource",
                    "logs:*LogGroup*",
                    "logs:PutRetentionPolicy",
                    "logs:ListTagsForResource",
                    "logs:TagResource",
                    "sns:*Topic*",
                    "sns:Subscribe",
                    "sns:Unsubscribe",
                    "sns:GetSubscriptionAttributes",
                    "budgets:*Budget*",
                    "budgets:ViewBudget",
                ],
                "Resource": "*",
            },
        ],
    }
