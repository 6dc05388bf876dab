"""
API key authentication for the OCI Compute API.

Requests are signed with the OCI HTTP signature scheme, implemented by
`oci.signer.Signer` and handed to the SDK Compute client.

Example:
    >>> from ocigrab._auth import create_signer
    >>> signer = create_signer(GRAB.config.credentials)
    >>> ComputeClient(credentials=GRAB.config.credentials, signer=signer)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from oci.signer import Signer

if TYPE_CHECKING:
    from ocigrab._config import CredentialsConfig


class AuthenticationError(Exception):
    """
    Raised when the API signer cannot be built from the configured principal.

    Attributes:
        message: Description of the failure.
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


def create_signer(credentials: CredentialsConfig) -> Signer:
    """
    Build a request signer from the configured API principal.

    The private key is loaded eagerly, so a missing or malformed key fails
    here, at startup, rather than on the first launch attempt.

    Raises:
        AuthenticationError: If the private key cannot be loaded.
    """
    try:
        return Signer(
            tenancy=credentials.tenancy,
            user=credentials.user,
            fingerprint=credentials.fingerprint,
            private_key_file_location=None,
            private_key_content=credentials.private_key,
        )
    except Exception as e:
        raise AuthenticationError(f"Unable to load the API signing key: {e}", cause=e) from e
