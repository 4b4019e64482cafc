"""
AWS credential resolution.

Resolves credentials through the standard boto3 provider chain (environment,
shared config/credentials files, SSO, instance metadata) so pipeline jobs
can inject them into task environments without the caller handling keys.

Usage:
    from tfpipeline.credentials import assume_role_with_web_identity, resolve_aws_credentials

    credentials = resolve_aws_credentials(profile="ci")
    config = config.with_aws_keys(
        credentials.access_key_id,
        credentials.secret_access_key,
        credentials.region,
        credentials.session_token,
    )

    # CI with OIDC federation
    credentials = assume_role_with_web_identity(role_arn, os.environ["AWS_OIDC_TOKEN"])
"""

import uuid
from dataclasses import dataclass, field

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from tfpipeline.config import DEFAULT_AWS_REGION
from tfpipeline.errors import ConfigurationError
from tfpipeline.logging_config import get_logger, log_with_context

logger = get_logger(__name__)


@dataclass(frozen=True)
class AwsCredentials:
    """
    Frozen AWS credentials.

    Attributes:
        access_key_id: AWS access key ID
        secret_access_key: AWS secret access key (excluded from repr)
        session_token: Session token for temporary credentials (excluded from repr)
        region: Region to export as AWS_REGION ("" uses the pipeline default)
    """

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str | None = field(default=None, repr=False)
    region: str = ""


def resolve_aws_credentials(
    profile: str | None = None,
    region: str | None = None,
) -> AwsCredentials:
    """
    Resolve AWS credentials through the boto3 provider chain.

    Args:
        profile: Named profile from the shared config files
        region: Region override; defaults to the session's region

    Returns:
        Frozen credentials

    Raises:
        ConfigurationError: If the profile does not exist or no credentials
            can be found
    """
    try:
        session = boto3.Session(profile_name=profile, region_name=region)
        credentials = session.get_credentials()
    except ProfileNotFound as e:
        raise ConfigurationError(
            f"AWS profile '{profile}' not found",
            config_key="AWS_PROFILE",
            reason=str(e),
        ) from e
    except BotoCoreError as e:
        raise ConfigurationError(
            f"Failed to resolve AWS credentials: {e}",
            config_key="AWS_ACCESS_KEY_ID",
            reason=str(e),
        ) from e

    if credentials is None:
        raise ConfigurationError(
            "No AWS credentials found in the environment or shared config",
            config_key="AWS_ACCESS_KEY_ID",
            reason="Credential provider chain returned nothing",
        )

    frozen = credentials.get_frozen_credentials()

    log_with_context(
        logger,
        "info",
        "Resolved AWS credentials",
        profile=profile,
        method=getattr(credentials, "method", None),
        temporary=bool(frozen.token),
    )

    return AwsCredentials(
        access_key_id=frozen.access_key,
        secret_access_key=frozen.secret_key,
        session_token=frozen.token,
        region=region or session.region_name or "",
    )


def assume_role_with_web_identity(
    role_arn: str,
    web_identity_token: str,
    session_name: str | None = None,
    region: str | None = None,
) -> AwsCredentials:
    """
    Exchange an OIDC token for temporary credentials through STS.

    Args:
        role_arn: Role to assume
        web_identity_token: OIDC token issued by the CI provider
        session_name: Role session name; generated when omitted
        region: STS region; defaults to DEFAULT_AWS_REGION

    Returns:
        Frozen temporary credentials

    Raises:
        ConfigurationError: If STS rejects the token or cannot be reached
    """
    region = region or DEFAULT_AWS_REGION
    session_name = session_name or f"tfpipeline-{uuid.uuid4()}"

    try:
        sts = boto3.client("sts", region_name=region)
        response = sts.assume_role_with_web_identity(
            RoleArn=role_arn,
            RoleSessionName=session_name,
            WebIdentityToken=web_identity_token,
        )
    except ClientError as e:
        raise ConfigurationError(
            f"STS rejected web identity for role '{role_arn}': {e}",
            config_key="AWS_ROLE_ARN",
            reason=e.response.get("Error", {}).get("Code", "ClientError"),
        ) from e
    except BotoCoreError as e:
        raise ConfigurationError(
            f"Failed to assume role '{role_arn}': {e}",
            config_key="AWS_ROLE_ARN",
            reason=str(e),
        ) from e

    issued = response["Credentials"]

    log_with_context(
        logger,
        "info",
        "Assumed role with web identity",
        role_arn=role_arn,
        session_name=session_name,
        expiration=str(issued.get("Expiration", "")),
    )

    return AwsCredentials(
        access_key_id=issued["AccessKeyId"],
        secret_access_key=issued["SecretAccessKey"],
        session_token=issued["SessionToken"],
        region=region,
    )
