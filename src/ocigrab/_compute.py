"""
Client for the OCI Compute API.

Only the LaunchInstance operation is used. The SDK client is built with
retries disabled: one call to `ComputeClient.launch_instance()` is one attempt,
and retries are driven by the launch loop.

Example:
    >>> client = ComputeClient(credentials=GRAB.config.credentials, signer=create_signer(...))
    >>> response = client.launch_instance(details, retry_token="a1b2c3")
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

import oci

from ocigrab._auth import AuthenticationError

if TYPE_CHECKING:
    from oci.core.models import LaunchInstanceDetails
    from oci.signer import Signer

    from ocigrab._config import CredentialsConfig

logger = logging.getLogger(__name__)


def to_sdk_config(credentials: CredentialsConfig) -> dict[str, Any]:
    """Convert the API principal to the config dict expected by SDK clients."""
    return {
        "user": credentials.user,
        "fingerprint": credentials.fingerprint,
        "key_content": credentials.private_key,
        "tenancy": credentials.tenancy,
        "region": credentials.region,
    }


class ComputeClient:
    """
    LaunchInstance over `oci.core.ComputeClient`.

    Args:
        credentials: API principal; the region selects the endpoint.
        signer: Request signer, see `ocigrab._auth.create_signer`.
        request_timeout: HTTP timeout of one request, in seconds.
        endpoint: Explicit endpoint overriding the one derived from region.

    Raises:
        AuthenticationError: If the SDK rejects the principal (malformed
            OCIDs or fingerprint, missing key).
    """

    def __init__(
        self,
        credentials: CredentialsConfig,
        signer: Signer,
        request_timeout: int = 60,
        endpoint: str | None = None,
    ):
        assert credentials is not None, "credentials cannot be None"
        assert signer is not None, "signer cannot be None"
        assert request_timeout > 0, "request_timeout must be greater than 0."

        self.request_timeout = request_timeout
        try:
            self._client = oci.core.ComputeClient(
                to_sdk_config(credentials),
                signer=signer,
                retry_strategy=oci.retry.NoneRetryStrategy(),
                timeout=request_timeout,
                service_endpoint=endpoint,
            )
        except Exception as e:
            raise AuthenticationError(f"Unable to build the Compute client: {e}", cause=e) from e

    def launch_instance(self, details: LaunchInstanceDetails, retry_token: str | None = None) -> oci.response.Response:
        """
        Send one LaunchInstance request.

        Args:
            details: Instance to launch.
            retry_token: Idempotency token. Requests sharing a token launch at
                most one instance. A fresh token is generated when omitted.

        Returns:
            The SDK response of the accepted request.

        Raises:
            oci.exceptions.ServiceError: If the API answers with an error status.
            oci.exceptions.RequestException: If no response could be obtained.
        """
        response = self._client.launch_instance(
            details,
            opc_retry_token=retry_token or uuid.uuid4().hex,
        )
        logger.info(
            f"Compute | ✅ LaunchInstance accepted (status={response.status}, "
            f"opc-request-id={response.headers.get('opc-request-id', '')})"
        )
        return response
