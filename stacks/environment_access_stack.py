from aws_cdk import (
    CfnOutput,
    Duration,
    Stack,
    aws_iam as iam,
)
from constructs import Construct

from access_router.environments import Environment
from access_router.trust import (
    GITHUB_OIDC_ISSUER,
    GITHUB_OIDC_THUMBPRINTS,
    deployment_policy_document,
    trust_conditions,
)


class EnvironmentAccessStack(Stack):
    """
    Deploy into one environment account (dev, staging or prod).

    Creates the GitHub Actions OIDC provider and the single deployment role whose
    trust policy admits only this repository's configured refs.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        environment: Environment,
        project_name: str,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        trust = environment.trust
        role_name = environment.role_arn.rsplit("/", 1)[-1]

        provider = iam.CfnOIDCProvider(
            self,
            "GitHubOidcProvider",
            url=GITHUB_OIDC_ISSUER,
            client_id_list=[trust.audience],
            thumbprint_list=list(GITHUB_OIDC_THUMBPRINTS),
        )

        role = iam.Role(
            self,
            "DeploymentRole",
            role_name=role_name,
            description=f"GitHub Actions deployment role for {environment.name} ({trust.repository})",
            assumed_by=iam.FederatedPrincipal(
                provider.attr_arn,
                trust_conditions(trust),
                "sts:AssumeRoleWithWebIdentity",
            ),
            max_session_duration=Duration.hours(1),
            inline_policies={
                "DeploymentPolicy": iam.PolicyDocument.from_json(
                    deployment_policy_document(
                        project_name=project_name, environment=environment.name
                    )
                )
            },
        )

        CfnOutput(
            self,
            "DeploymentRoleArn",
            value=role.role_arn,
            description=f"Role assumed by GitHub Actions for {environment.name} deployments.",
        )
        CfnOutput(
            self,
            "OidcProviderArn",
            value=provider.attr_arn,
            description="GitHub Actions OIDC identity provider.",
        )
