"""
Data models for ocigrab.

This module contains the data structures shared by the launch client, the
attempt loop and the backoff controller:
- AttemptOutcome: What one launch attempt returned (frozen/immutable)
- OutcomeCategory: Enum of outcome classes driving the delay policy
- build_launch_details: The body of a LaunchInstance request, as SDK models
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from oci.core.models import (
    CreateVnicDetails,
    InstanceOptions,
    InstanceSourceViaImageDetails,
    LaunchInstanceAvailabilityConfigDetails,
    LaunchInstanceDetails,
    LaunchInstanceShapeConfigDetails,
)
from oci.exceptions import ServiceError

if TYPE_CHECKING:
    from ocigrab._config import InstanceConfig, LaunchConfig

# The Compute API embeds a human-readable reason after this marker, usually
# terminated by a period. A reason ends at the next marker or at the end of
# its line.
MESSAGE_PATTERN = re.compile(r"Message: (.+?)\.?(?=\s*Message: |$)", re.MULTILINE)

HTTP_TOO_MANY_REQUESTS = 429


def extract_messages(error_message: str) -> tuple[str, ...]:
    """
    Extract the human-readable reasons embedded in an error message.

    Example:
        >>> extract_messages("Http Status Code: 500. Message: Out of host capacity.")
        ('Out of host capacity',)
        >>> extract_messages("connection reset by peer")
        ()
    """
    if not error_message:
        return ()
    return tuple(MESSAGE_PATTERN.findall(error_message))


def describe_service_error(error: ServiceError) -> str:
    """
    Render a ServiceError as one error text, the reason after a "Message: "
    marker and the operation on its own line.

    Example:
        >>> describe_service_error(error)
        'Error returned by compute service. Http Status Code: 500. Error Code: InternalError. ...'
    """
    return (
        f"Error returned by {error.target_service or 'compute'} service. "
        f"Http Status Code: {error.status}. Error Code: {error.code}. "
        f"Opc request id: {error.request_id}. Message: {error.message or ''}\n"
        f"Operation Name: {error.operation_name}\n"
        f"Request Endpoint: {error.request_endpoint}"
    )


class OutcomeCategory(enum.StrEnum):
    """
    Class of a launch attempt outcome.

    Attributes:
        TRANSPORT_FAILURE: The attempt failed without an HTTP response
            (DNS, TLS, connection reset, timeout, signing error...).
        RATE_LIMITED: The API answered HTTP 429.
        HTTP_FAILURE: The API answered any other non-2xx status.
        SUCCESS: The API accepted the launch request.
    """
    TRANSPORT_FAILURE = "TRANSPORT_FAILURE"
    RATE_LIMITED = "RATE_LIMITED"
    HTTP_FAILURE = "HTTP_FAILURE"
    SUCCESS = "SUCCESS"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AttemptOutcome:
    """
    Result of a single launch attempt.

    Attributes:
        has_http_response: Whether the attempt got an HTTP response at all.
        status_code: HTTP status code, only set when has_http_response is True.
        error_message: Raw error text; empty on success.
        extracted_messages: Reasons extracted from error_message.
        attempt_number: One-based index of the attempt within its launch call.

    Example:
        >>> outcome = AttemptOutcome.from_exception(service_error)
        >>> outcome.status_code
        500
        >>> outcome.extracted_messages
        ('Out of host capacity',)
    """
    has_http_response: bool
    status_code: int | None = None
    error_message: str = ""
    extracted_messages: tuple[str, ...] = ()
    attempt_number: int = 1

    def __post_init__(self) -> None:
        if self.has_http_response:
            assert self.status_code is not None, "status_code is required when there is an HTTP response."
        else:
            assert self.status_code is None, "status_code must be None without an HTTP response."

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == HTTP_TOO_MANY_REQUESTS

    @property
    def is_success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @classmethod
    def success(cls, status_code: int = 200, attempt_number: int = 1) -> AttemptOutcome:
        """Build the outcome of an accepted launch request."""
        return cls(has_http_response=True, status_code=status_code, attempt_number=attempt_number)

    @classmethod
    def from_exception(cls, exc: BaseException, attempt_number: int = 1) -> AttemptOutcome:
        """
        Build the outcome of a failed attempt.

        A ServiceError carries the HTTP status of the API answer. Anything else
        (oci.exceptions.RequestException, ConnectTimeout, signing errors...)
        is a transport failure.
        """
        if not isinstance(exc, ServiceError):
            return cls(
                has_http_response=False,
                error_message=str(exc),
                attempt_number=attempt_number,
            )

        error_message = describe_service_error(exc)
        return cls(
            has_http_response=True,
            status_code=int(exc.status),
            error_message=error_message,
            extracted_messages=extract_messages(error_message),
            attempt_number=attempt_number,
        )


def build_launch_details(instance: InstanceConfig, launch: LaunchConfig) -> LaunchInstanceDetails:
    """
    Build the body of a LaunchInstance request.

    The shape configuration and availability policy are fixed: a flexible
    shape sized by ocpus/memory_in_gbs, live migration preferred and instance
    restore as recovery action. Legacy IMDS endpoints stay enabled and the
    primary VNIC gets a public IP.

    Example:
        >>> details = build_launch_details(GRAB.config.instance, GRAB.config.launch)
        >>> details.shape_config.ocpus
        4.0
    """
    return LaunchInstanceDetails(
        compartment_id=instance.compartment_id,
        display_name=instance.display_name,
        availability_domain=instance.availability_domain,
        shape=instance.shape,
        shape_config=LaunchInstanceShapeConfigDetails(
            ocpus=launch.ocpus,
            memory_in_gbs=launch.memory_in_gbs,
        ),
        instance_options=InstanceOptions(
            are_legacy_imds_endpoints_disabled=False,
        ),
        availability_config=LaunchInstanceAvailabilityConfigDetails(
            is_live_migration_preferred=True,
            recovery_action=LaunchInstanceAvailabilityConfigDetails.RECOVERY_ACTION_RESTORE_INSTANCE,
        ),
        create_vnic_details=CreateVnicDetails(
            assign_public_ip=True,
            display_name=instance.vnic_display_name,
            hostname_label=instance.vnic_hostname,
            subnet_id=instance.subnet_id,
        ),
        source_details=InstanceSourceViaImageDetails(
            image_id=instance.image_id,
        ),
        metadata={
            "ssh_authorized_keys": instance.ssh_authorized_keys,
        },
    )
