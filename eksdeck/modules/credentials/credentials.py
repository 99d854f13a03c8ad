import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from eksdeck.modules.executor import CommandError, CommandExecutor

logger = logging.getLogger(__name__)

# `aws configure set` keys managed by this server, in the order they are written
CREDENTIAL_KEYS = (
    "aws_access_key_id",
    "aws_secret_access_key",
    "default.region",
    "default.output",
)

_INVALID_CREDENTIAL_MARKERS = ("InvalidClientTokenId", "AuthFailure", "SignatureDoesNotMatch")


class CredentialError(RuntimeError):
    """Configuring or verifying AWS credentials failed."""

    def __init__(self, message: str, status_code: int = 500, details: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


@dataclass
class ClearResult:
    cleared: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def describe_failures(self) -> str:
        return "; ".join(f"Failed to clear {key}: {msg}" for key, msg in self.failures.items())


class AwsCredentialManager:
    """Writes, verifies and clears the AWS CLI default profile."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    async def configure(self, access_key_id: str, secret_access_key: str, region: str) -> str:
        """
        Store credentials, then verify them with STS and check eksctl.

        Any failure clears the profile again so bad credentials never linger.

        Returns:
            eksctl version string

        Raises:
            CredentialError: 401 for rejected credentials, 500 otherwise
        """
        values = {
            "aws_access_key_id": access_key_id,
            "aws_secret_access_key": secret_access_key,
            "default.region": region,
            "default.output": "json",
        }
        try:
            for key in CREDENTIAL_KEYS:
                await self.executor.run_once(
                    "aws", ["configure", "set", key, values[key]], sensitive=key.startswith("aws_")
                )
            await self.executor.run_once("aws", ["sts", "get-caller-identity"])
        except CommandError as e:
            logger.error(f"AWS configuration or verification error: {e}")
            await self._clear_after_failure()
            if any(marker in str(e) for marker in _INVALID_CREDENTIAL_MARKERS):
                raise CredentialError(
                    f"Invalid AWS credentials. Please check your Access Key ID and Secret "
                    f"Access Key. Details: {e}",
                    status_code=401,
                    details=str(e),
                ) from e
            raise CredentialError(
                f"Failed to configure AWS CLI or verify setup: {e}", details=str(e)
            ) from e

        try:
            version = await self.executor.run_once("eksctl", ["version"])
        except CommandError as e:
            logger.error(f"eksctl verification failed: {e}")
            await self._clear_after_failure()
            raise CredentialError(
                f"eksctl is not installed or configured correctly. Please ensure it's in "
                f"your PATH. Details: {e}",
                details=str(e),
            ) from e

        logger.info(f"AWS credentials configured for region {region}, eksctl {version}")
        return version

    async def check_connection(self) -> None:
        """
        Raises:
            CredentialError: 401 when eksctl cannot reach AWS with the current profile
        """
        try:
            await self.executor.run_once("eksctl", ["get", "clusters", "--output", "json"])
        except CommandError as e:
            logger.error(f"eksctl connection check failed: {e}")
            raise CredentialError(
                f"Not connected to EKS: {str(e).strip()}", status_code=401, details=str(e)
            ) from e

    async def clear(self) -> ClearResult:
        """
        Blank every managed key.

        Best effort: each key is attempted even if an earlier one failed,
        and nothing is rolled back.
        """
        result = ClearResult()
        for key in CREDENTIAL_KEYS:
            try:
                await self.executor.run_once("aws", ["configure", "set", key, ""])
                result.cleared.append(key)
            except CommandError as e:
                logger.error(f"Error clearing AWS credential {key}: {e}")
                result.failures[key] = str(e)
        return result

    async def _clear_after_failure(self) -> None:
        result = await self.clear()
        if not result.ok:
            logger.error(f"Could not fully clear AWS credentials: {result.describe_failures()}")
