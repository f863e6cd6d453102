from aws_cdk import Stack, aws_organizations as organizations
from constructs import Construct

from access_router.account_factory import ORG_ACCESS_ROLE_NAME
from access_router.trust import GITHUB_OIDC_HOST


class WorkloadsGuardrailStack(Stack):
    """
    Deploy into the AWS Organizations management account.

    Attaches deny-only SCPs to the Workloads OU to enforce:
    - Environment accounts cannot leave the organization
    - The GitHub OIDC provider and deployment role trust cannot be changed from inside
      an environment account, except by the bootstrap principal
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        target_ou_id: str,
        policy_name_prefix: str = "Workloads",
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        target_ou_id = (target_ou_id or "").strip()
        if not target_ou_id.startswith("ou-"):
            raise ValueError("target_ou_id is required (Workloads OU id, ou-...).")

        policy_name_prefix = (policy_name_prefix or "Workloads").strip() or "Workloads"

        # In SCP evaluation, aws:PrincipalArn is the IAM role ARN for assumed-role sessions.
        exempt_principal_arns = [
            f"arn:aws:iam::*:role/{ORG_ACCESS_ROLE_NAME}",
            "arn:aws:iam::*:role/cdk-*-cfn-exec-role-*",
        ]

        deny_leave_doc = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "DenyLeaveOrganization",
                    "Effect": "Deny",
                    "Action": ["organizations:LeaveOrganization"],
                    "Resource": "*",
                }
            ],
        }

        deny_trust_tampering_doc = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "DenyOidcProviderTampering",
                    "Effect": "Deny",
                    "Action": [
                        "iam:CreateOpenIDConnectProvider",
                        "iam:DeleteOpenIDConnectProvider",
                        "iam:UpdateOpenIDConnectProviderThumbprint",
                        "iam:AddClientIDToOpenIDConnectProvider",
                        "iam:RemoveClientIDFromOpenIDConnectProvider",
                        "iam:TagOpenIDConnectProvider",
                        "iam:UntagOpenIDConnectProvider",
                    ],
                    "Resource": f"arn:aws:iam::*:oidc-provider/{GITHUB_OIDC_HOST}",
                    "Condition": {"ArnNotLike": {"aws:PrincipalArn": exempt_principal_arns}},
                },
                {
                    "Sid": "DenyDeploymentRoleTrustEdits",
                    "Effect": "Deny",
                    "Action": [
                        "iam:UpdateAssumeRolePolicy",
                        "iam:DeleteRole",
                        "iam:PutRolePolicy",
                        "iam:DeleteRolePolicy",
                        "iam:AttachRolePolicy",
                        "iam:DetachRolePolicy",
                        "iam:PutRolePermissionsBoundary",
                        "iam:DeleteRolePermissionsBoundary",
                    ],
                    "Resource": "arn:aws:iam::*:role/GitHubActions-*",
                    "Condition": {"ArnNotLike": {"aws:PrincipalArn": exempt_principal_arns}},
                },
            ],
        }

        organizations.CfnPolicy(
            self,
            "WorkloadsDenyLeaveOrganization",
            name=f"{policy_name_prefix}-DenyLeaveOrganization",
            description="Deny environment accounts leaving the organization.",
            type="SERVICE_CONTROL_POLICY",
            content=deny_leave_doc,
            target_ids=[target_ou_id],
        )

        organizations.CfnPolicy(
            self,
            "WorkloadsDenyTrustTampering",
            name=f"{policy_name_prefix}-DenyTrustTampering",
            description="Deny OIDC provider and deployment role trust changes outside the bootstrap principal.",
            type="SERVICE_CONTROL_POLICY",
            content=deny_trust_tampering_doc,
            target_ids=[target_ou_id],
        )
