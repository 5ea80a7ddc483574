"""Cloud-side provisioning primitives used by device onboarding.

Every operation is create-or-fetch: it first looks for an existing result
and only creates when none is found, so any step can be re-run safely.
Certificates are the one resource that cannot be looked up by content;
the thing's attached principals stand in for that lookup, and a duplicate
issued by a concurrent onboarding is revoked through
:meth:`ProvisioningBackend.revoke_certificate`.

Private keys never leave this process unless the caller persists them:
the key pair and CSR are generated locally with ``cryptography`` and only
the CSR is sent to AWS IoT.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import boto3
import orjson
from botocore.exceptions import ClientError
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from fleet_orchestrator.config import OnboardingConfig
from fleet_orchestrator.topics import DATA, ERROR, INFO, JOB

logger = logging.getLogger(__name__)

THING_NAME_VAR = "${iot:Connection.Thing.ThingName}"
ROLE_PERMISSIONS_POLICY_NAME = "fleet-gateway-permissions"
CREDENTIAL_DURATION_SECONDS = 3600

_NOT_FOUND_CODES = frozenset({
    "ResourceNotFoundException",
    "NoSuchEntity",
    "NoSuchBucket",
    "NotFound",
    "404",
})


@dataclass
class CertificateMaterial:
    """A certificate bound to a device's thing.

    ``certificate_pem`` and ``private_key_pem`` are only populated when the
    certificate was issued by this call.
    """

    certificate_arn: str
    certificate_pem: Optional[str] = None
    private_key_pem: Optional[str] = None
    created: bool = False


class ProvisioningBackend(Protocol):
    """Create-or-fetch operations against the identity provider."""

    def ensure_thing(self, device_name: str) -> str: ...

    def ensure_certificate(self, device_name: str) -> CertificateMaterial: ...

    def revoke_certificate(self, device_name: str, certificate_arn: str) -> None: ...

    def ensure_iot_policy(self, certificate_arn: str) -> str: ...

    def ensure_credentials_role(self) -> str: ...

    def ensure_role_alias(self, role_arn: str) -> str: ...

    def ensure_resource_bucket(self) -> str: ...


def generate_key_and_csr(common_name: str) -> tuple[str, str]:
    """Return ``(private_key_pem, csr_pem)`` for a new P-256 key."""
    key = ec.generate_private_key(ec.SECP256R1())
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return key_pem.decode("ascii"), csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def role_alias_arn(config: OnboardingConfig) -> str:
    return f"arn:aws:iot:{config.region}:{config.account_id}:rolealias/{config.role_alias_name}"


def build_iot_policy(config: OnboardingConfig, topic_prefix: str) -> dict:
    """Least-privilege policy attached to every gateway certificate."""
    iot_arn = f"arn:aws:iot:{config.region}:{config.account_id}"
    shadow = f"$aws/things/{THING_NAME_VAR}/shadow/*"
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": "iot:Connect",
                "Resource": f"{iot_arn}:client/{THING_NAME_VAR}",
            },
            {
                "Effect": "Allow",
                "Action": "iot:Publish",
                "Resource": [
                    f"{iot_arn}:topic/{topic_prefix}/{INFO}/*",
                    f"{iot_arn}:topic/{topic_prefix}/{ERROR}/*",
                    f"{iot_arn}:topic/{topic_prefix}/{DATA}/*",
                    f"{iot_arn}:topic/{shadow}",
                ],
            },
            {
                "Effect": "Allow",
                "Action": "iot:Subscribe",
                "Resource": [
                    f"{iot_arn}:topicfilter/{topic_prefix}/{JOB}/*",
                    f"{iot_arn}:topicfilter/{shadow}",
                ],
            },
            {
                "Effect": "Allow",
                "Action": "iot:Receive",
                "Resource": [
                    f"{iot_arn}:topic/{topic_prefix}/{JOB}/*",
                    f"{iot_arn}:topic/{shadow}",
                ],
            },
            {
                "Effect": "Allow",
                "Action": ["iot:GetThingShadow", "iot:UpdateThingShadow"],
                "Resource": f"{iot_arn}:thing/{THING_NAME_VAR}",
            },
            {
                "Effect": "Allow",
                "Action": "iot:AssumeRoleWithCertificate",
                "Resource": role_alias_arn(config),
            },
            {
                "Effect": "Allow",
                "Action": [
                    "greengrass:GetComponentVersionArtifact",
                    "greengrass:ResolveComponentCandidates",
                    "greengrass:GetDeploymentConfiguration",
                ],
                "Resource": "*",
            },
        ],
    }


def build_credentials_trust_policy() -> dict:
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": "credentials.iot.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }],
    }


def build_credentials_role_policy(config: OnboardingConfig) -> dict:
    """Permissions a gateway obtains through the role alias."""
    region, account = config.region, config.account_id
    statements: list[dict] = [
        {
            "Effect": "Allow",
            "Action": [
                "logs:CreateLogGroup",
                "logs:CreateLogStream",
                "logs:PutLogEvents",
                "logs:DescribeLogStreams",
            ],
            "Resource": f"arn:aws:logs:{region}:{account}:log-group:/aws/greengrass/*",
        },
        {
            "Effect": "Allow",
            "Action": ["iot:GetThingShadow", "iot:UpdateThingShadow", "iot:DeleteThingShadow"],
            "Resource": f"arn:aws:iot:{region}:{account}:thing/*",
        },
        {
            "Effect": "Allow",
            "Action": "iotsitewise:BatchPutAssetPropertyValue",
            "Resource": "*",
        },
    ]
    if config.kinesis_stream_name:
        statements.append({
            "Effect": "Allow",
            "Action": ["kinesis:PutRecord", "kinesis:PutRecords"],
            "Resource": f"arn:aws:kinesis:{region}:{account}:stream/{config.kinesis_stream_name}",
        })
    if config.resource_bucket:
        statements.append({
            "Effect": "Allow",
            "Action": ["s3:GetObject", "s3:GetBucketLocation"],
            "Resource": [
                f"arn:aws:s3:::{config.resource_bucket}",
                f"arn:aws:s3:::{config.resource_bucket}/*",
            ],
        })
    return {"Version": "2012-10-17", "Statement": statements}


def _is_not_found(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES


class AwsProvisioningBackend:
    """:class:`ProvisioningBackend` backed by AWS IoT Core, IAM and S3.

    Parameters
    ----------
    config:
        Names of the fleet-wide policy, role, alias, bucket and stream.
    topic_prefix:
        Prefix of the fleet topics the IoT policy grants.
    iot, iam, s3:
        boto3 clients; created from ``config.region`` when omitted.
    """

    def __init__(
        self,
        config: OnboardingConfig,
        topic_prefix: str = "fleet",
        iot: Any = None,
        iam: Any = None,
        s3: Any = None,
    ) -> None:
        self._config = config
        self._topic_prefix = topic_prefix
        self._iot = iot or boto3.client("iot", region_name=config.region)
        self._iam = iam or boto3.client("iam", region_name=config.region)
        self._s3 = s3 or boto3.client("s3", region_name=config.region)

    def ensure_thing(self, device_name: str) -> str:
        try:
            return self._iot.describe_thing(thingName=device_name)["thingArn"]
        except ClientError as exc:
            if not _is_not_found(exc):
                raise
        logger.info("Creating IoT thing %s", device_name)
        return self._iot.create_thing(thingName=device_name)["thingArn"]

    def ensure_certificate(self, device_name: str) -> CertificateMaterial:
        principals = self._iot.list_thing_principals(thingName=device_name).get("principals", [])
        certificates = [p for p in principals if ":cert/" in p]
        if certificates:
            return CertificateMaterial(certificate_arn=certificates[0])

        private_key_pem, csr_pem = generate_key_and_csr(device_name)
        response = self._iot.create_certificate_from_csr(
            certificateSigningRequest=csr_pem, setAsActive=True
        )
        certificate_arn = response["certificateArn"]
        self._iot.attach_thing_principal(thingName=device_name, principal=certificate_arn)
        logger.info("Issued certificate %s for %s", certificate_arn, device_name)
        return CertificateMaterial(
            certificate_arn=certificate_arn,
            certificate_pem=response.get("certificatePem"),
            private_key_pem=private_key_pem,
            created=True,
        )

    def revoke_certificate(self, device_name: str, certificate_arn: str) -> None:
        certificate_id = certificate_arn.rsplit("/", 1)[-1]
        self._iot.detach_thing_principal(thingName=device_name, principal=certificate_arn)
        self._iot.update_certificate(certificateId=certificate_id, newStatus="INACTIVE")
        self._iot.delete_certificate(certificateId=certificate_id, forceDelete=True)
        logger.info("Revoked duplicate certificate %s for %s", certificate_arn, device_name)

    def ensure_iot_policy(self, certificate_arn: str) -> str:
        name = self._config.iot_policy_name
        try:
            policy_arn = self._iot.get_policy(policyName=name)["policyArn"]
        except ClientError as exc:
            if not _is_not_found(exc):
                raise
            document = build_iot_policy(self._config, self._topic_prefix)
            policy_arn = self._iot.create_policy(
                policyName=name, policyDocument=orjson.dumps(document).decode()
            )["policyArn"]
            logger.info("Created IoT policy %s", name)
        self._iot.attach_policy(policyName=name, target=certificate_arn)
        return policy_arn

    def ensure_credentials_role(self) -> str:
        name = self._config.credentials_role_name
        try:
            role_arn = self._iam.get_role(RoleName=name)["Role"]["Arn"]
        except ClientError as exc:
            if not _is_not_found(exc):
                raise
            role_arn = self._iam.create_role(
                RoleName=name,
                AssumeRolePolicyDocument=orjson.dumps(build_credentials_trust_policy()).decode(),
                Description="Assumed by fleet gateways through the IoT role alias",
            )["Role"]["Arn"]
            logger.info("Created credentials role %s", name)
        self._iam.put_role_policy(
            RoleName=name,
            PolicyName=ROLE_PERMISSIONS_POLICY_NAME,
            PolicyDocument=orjson.dumps(build_credentials_role_policy(self._config)).decode(),
        )
        return role_arn

    def ensure_role_alias(self, role_arn: str) -> str:
        name = self._config.role_alias_name
        try:
            response = self._iot.describe_role_alias(roleAlias=name)
            return response["roleAliasDescription"]["roleAliasArn"]
        except ClientError as exc:
            if not _is_not_found(exc):
                raise
        logger.info("Creating role alias %s", name)
        return self._iot.create_role_alias(
            roleAlias=name,
            roleArn=role_arn,
            credentialDurationSeconds=CREDENTIAL_DURATION_SECONDS,
        )["roleAliasArn"]

    def ensure_resource_bucket(self) -> str:
        bucket = self._config.resource_bucket
        if not bucket:
            raise ValueError("onboarding.resource_bucket is not configured")
        try:
            self._s3.head_bucket(Bucket=bucket)
            return bucket
        except ClientError as exc:
            if not _is_not_found(exc):
                raise
        logger.info("Creating resource bucket %s", bucket)
        kwargs: dict[str, Any] = {"Bucket": bucket}
        if self._config.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._config.region}
        self._s3.create_bucket(**kwargs)
        return bucket
