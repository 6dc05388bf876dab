"""
Global configuration for ocigrab.

Configuration is read once at process startup. Instance and principal settings
come from the bare environment variables used by the container image
(INSTANCE_SHAPE, TENANCY, PRIVATE_KEY, ...). Tuning knobs for the backoff
controller, the per-call attempt loop and the metrics exporter use the
OCIGRAB_* prefix and have sensible defaults.

Hierarchy of precedence (highest to lowest):
1. Values set via GRAB.configure()
2. Environment variables - when allow_env_override=True
3. Hardcoded defaults (in dataclass fields)

Instance and credential values are never validated locally: a missing variable
travels to the Compute API as an empty string, and the API reports the error.

Example:
    >>> from ocigrab import GRAB
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> GRAB.config.backoff.initial_delay
    31
    >>>
    >>> # Custom configuration
    >>> GRAB.configure(
    ...     backoff={"decrease_enabled": True},
    ...     metrics={"port": 9100},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from functools import wraps
from typing import Any, Self

from ocigrab._utils import mask_secret, unescape_newlines

# Sections in declaration order, used by the tracker and explain output.
_SECTIONS = ("instance", "credentials", "backoff", "launch", "metrics")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Utility class for reading environment variables with type conversion.

    Example:
        >>> EnvVars.get("OCIGRAB_METRICS_PORT", type_hint=int)
        2223
        >>> EnvVars.get("REGION")
        'sa-saopaulo-1'
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles both actual types and string annotations (PEP 563).
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return _parse_bool
        return str


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in ("true", "1", "yes", "on"):
        return True
    if normalized in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` for creating new instances with partial
    field updates, and `.with_env_vars()` for applying the env vars declared
    in field metadata.

    Example:
        >>> config = BackoffConfig()
        >>> custom = config.with_overrides({"decrease_enabled": True})
        >>> custom.decrease_enabled
        True
    """

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a new instance with specified fields overridden.

        None values are ignored.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        filtered = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Reads env vars declared in field metadata and applies them as overrides.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)

    def validate(self) -> Self:
        """Validate section fields. Sections without constraints accept anything."""
        return self


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class InstanceConfig(OverridableConfig):
    """
    Target instance settings sent with every launch request.

    Attributes:
        shape: Compute shape name (e.g. "VM.Standard.A1.Flex").
            Env var: INSTANCE_SHAPE
        display_name: Instance display name.
            Env var: INSTANCE_NAME
        image_id: OCID of the boot image.
            Env var: INSTANCE_IMAGE
        subnet_id: OCID of the subnet for the primary VNIC.
            Env var: INSTANCE_SUBNET
        availability_domain: Availability domain name.
            Env var: INSTANCE_AD
        compartment_id: OCID of the target compartment.
            Env var: INSTANCE_COMPARTMENT
        ssh_authorized_keys: Public key material placed in instance metadata.
            Env var: INSTANCE_SSHAUTHORIZED
        vnic_display_name: Display name of the primary VNIC.
            Env var: VNIC_DISPLAY_NAME
        vnic_hostname: Hostname label of the primary VNIC.
            Env var: VNIC_HOSTNAME
    """

    shape: str = field(default="", metadata={"env": "INSTANCE_SHAPE"})
    display_name: str = field(default="", metadata={"env": "INSTANCE_NAME"})
    image_id: str = field(default="", metadata={"env": "INSTANCE_IMAGE"})
    subnet_id: str = field(default="", metadata={"env": "INSTANCE_SUBNET"})
    availability_domain: str = field(default="", metadata={"env": "INSTANCE_AD"})
    compartment_id: str = field(default="", metadata={"env": "INSTANCE_COMPARTMENT"})
    ssh_authorized_keys: str = field(default="", metadata={"env": "INSTANCE_SSHAUTHORIZED"})
    vnic_display_name: str = field(default="", metadata={"env": "VNIC_DISPLAY_NAME"})
    vnic_hostname: str = field(default="", metadata={"env": "VNIC_HOSTNAME"})


@dataclass(frozen=True)
class CredentialsConfig(OverridableConfig):
    """
    API principal used to sign Compute API requests.

    The private key is commonly passed through a single-line env var, so the
    literal two-character sequence backslash-n is turned into a real newline.

    Attributes:
        user: OCID of the API user.
            Env var: USER
        fingerprint: Fingerprint of the API signing key.
            Env var: FINGERPRINT
        private_key: PEM-encoded API signing key.
            Env var: PRIVATE_KEY
        tenancy: OCID of the tenancy.
            Env var: TENANCY
        region: Region identifier (e.g. "eu-frankfurt-1").
            Env var: REGION
    """

    user: str = field(default="", metadata={"env": "USER"})
    fingerprint: str = field(default="", metadata={"env": "FINGERPRINT", "secret": True})
    private_key: str = field(
        default="",
        metadata={"env": "PRIVATE_KEY", "converter": unescape_newlines, "secret": True},
    )
    tenancy: str = field(default="", metadata={"env": "TENANCY"})
    region: str = field(default="", metadata={"env": "REGION"})


@dataclass(frozen=True)
class BackoffConfig(OverridableConfig):
    """
    Settings of the adaptive delay between launch attempts.

    Attributes:
        initial_delay: Delay in seconds at process start.
            Env var: OCIGRAB_BACKOFF_INITIAL_DELAY
        floor: The delay is never decreased at or below this value.
            Env var: OCIGRAB_BACKOFF_FLOOR
        increase_step: Seconds added to the delay on every HTTP 429.
            Env var: OCIGRAB_BACKOFF_INCREASE_STEP
        decrease_step: Seconds removed on a decrease, when enabled.
            Env var: OCIGRAB_BACKOFF_DECREASE_STEP
        decrease_interval: Minimum seconds between two decrease considerations.
            Env var: OCIGRAB_BACKOFF_DECREASE_INTERVAL
        decrease_enabled: Whether the delay is actually lowered after a quiet
            interval. Disabled by default: the delay only ever grows.
            Env var: OCIGRAB_BACKOFF_DECREASE_ENABLED
    """

    initial_delay: int = field(default=31, metadata={"env": "OCIGRAB_BACKOFF_INITIAL_DELAY"})
    floor: int = field(default=31, metadata={"env": "OCIGRAB_BACKOFF_FLOOR"})
    increase_step: int = field(default=1, metadata={"env": "OCIGRAB_BACKOFF_INCREASE_STEP"})
    decrease_step: int = field(default=1, metadata={"env": "OCIGRAB_BACKOFF_DECREASE_STEP"})
    decrease_interval: float = field(default=300.0, metadata={"env": "OCIGRAB_BACKOFF_DECREASE_INTERVAL"})
    decrease_enabled: bool = field(default=False, metadata={"env": "OCIGRAB_BACKOFF_DECREASE_ENABLED"})

    def validate(self) -> Self:
        """Validate backoff configuration fields."""
        if self.initial_delay < 0:
            raise ConfigValidationError(
                "initial_delay", self.initial_delay,
                "Must be >= 0.", section="backoff"
            )
        if self.floor < 0:
            raise ConfigValidationError(
                "floor", self.floor,
                "Must be >= 0.", section="backoff"
            )
        if self.increase_step < 0:
            raise ConfigValidationError(
                "increase_step", self.increase_step,
                "Must be >= 0.", section="backoff"
            )
        if self.decrease_step < 0:
            raise ConfigValidationError(
                "decrease_step", self.decrease_step,
                "Must be >= 0.", section="backoff"
            )
        if self.decrease_interval < 0:
            raise ConfigValidationError(
                "decrease_interval", self.decrease_interval,
                "Must be >= 0.", section="backoff"
            )
        return self


@dataclass(frozen=True)
class LaunchConfig(OverridableConfig):
    """
    Settings of a single launch call and its internal attempt loop.

    Attributes:
        max_attempts: Attempts per launch call before the call gives up.
            Env var: OCIGRAB_LAUNCH_MAX_ATTEMPTS
        backoff_factor: Base of the exponential wait between attempts
            (wait = backoff_factor * 2 ** (attempt - 1)).
            Env var: OCIGRAB_LAUNCH_BACKOFF_FACTOR
        max_backoff: Upper bound of the exponential wait, in seconds.
            Env var: OCIGRAB_LAUNCH_MAX_BACKOFF
        request_timeout: HTTP timeout of one attempt, in seconds.
            Env var: OCIGRAB_LAUNCH_REQUEST_TIMEOUT
        ocpus: OCPUs of the flexible shape.
            Env var: OCIGRAB_LAUNCH_OCPUS
        memory_in_gbs: Memory of the flexible shape, in GB.
            Env var: OCIGRAB_LAUNCH_MEMORY_IN_GBS
    """

    max_attempts: int = field(default=8, metadata={"env": "OCIGRAB_LAUNCH_MAX_ATTEMPTS"})
    backoff_factor: float = field(default=1.0, metadata={"env": "OCIGRAB_LAUNCH_BACKOFF_FACTOR"})
    max_backoff: float = field(default=30.0, metadata={"env": "OCIGRAB_LAUNCH_MAX_BACKOFF"})
    request_timeout: int = field(default=60, metadata={"env": "OCIGRAB_LAUNCH_REQUEST_TIMEOUT"})
    ocpus: float = field(default=4.0, metadata={"env": "OCIGRAB_LAUNCH_OCPUS"})
    memory_in_gbs: float = field(default=24.0, metadata={"env": "OCIGRAB_LAUNCH_MEMORY_IN_GBS"})

    def validate(self) -> Self:
        """Validate launch configuration fields."""
        if self.max_attempts < 1:
            raise ConfigValidationError(
                "max_attempts", self.max_attempts,
                "Must be >= 1.", section="launch"
            )
        if self.backoff_factor < 0:
            raise ConfigValidationError(
                "backoff_factor", self.backoff_factor,
                "Must be >= 0.", section="launch"
            )
        if self.max_backoff < 0:
            raise ConfigValidationError(
                "max_backoff", self.max_backoff,
                "Must be >= 0.", section="launch"
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be > 0.", section="launch"
            )
        if self.ocpus <= 0:
            raise ConfigValidationError(
                "ocpus", self.ocpus,
                "Must be > 0.", section="launch"
            )
        if self.memory_in_gbs <= 0:
            raise ConfigValidationError(
                "memory_in_gbs", self.memory_in_gbs,
                "Must be > 0.", section="launch"
            )
        return self


@dataclass(frozen=True)
class MetricsConfig(OverridableConfig):
    """
    Prometheus exporter settings.

    Attributes:
        port: TCP port of the /metrics endpoint.
            Env var: OCIGRAB_METRICS_PORT
        addr: Bind address of the exporter.
            Env var: OCIGRAB_METRICS_ADDR
    """

    port: int = field(default=2223, metadata={"env": "OCIGRAB_METRICS_PORT"})
    addr: str = field(default="0.0.0.0", metadata={"env": "OCIGRAB_METRICS_ADDR"})

    def validate(self) -> Self:
        """Validate metrics configuration fields."""
        if not 0 < self.port < 65536:
            raise ConfigValidationError(
                "port", self.port,
                "Must be between 1 and 65535.", section="metrics"
            )
        return self


# =============================================================================
# Source Tracking
# =============================================================================


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "initial_delay").
        value: The resolved value.
        source: Where the value came from:
            - "default": Hardcoded default value
            - "env:VAR_NAME": Environment variable
            - "configure": Set via GRAB.configure()
        secret: Whether the value must be masked when displayed.

    Example:
        >>> ConfigEntry("port", 9100, "configure").formatted_value
        '9100'
    """

    name: str
    value: Any
    source: str
    secret: bool = False

    @property
    def formatted_value(self) -> str:
        """
        Return value formatted for display.

        Masks secret fields and truncates long strings.
        """
        if self.secret:
            return mask_secret(self.value)

        if self.value is None:
            return "None"

        str_value = str(self.value)
        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."

        return str_value


@dataclass(frozen=True)
class GrabConfigTracker:
    """
    Tracks the source of config field values.

    Attributes:
        sources: Structure {"section": {"field": "source"}} where source is
            "env:VAR_NAME" or "configure". Untracked fields are defaults.
    """

    sources: dict[str, dict[str, str]] = field(default_factory=dict)

    @staticmethod
    def track_changes(
        source_type: str,
    ) -> Callable[[Callable[..., GrabConfig]], Callable[..., GrabConfig]]:
        """Decorator that records the fields touched by the decorated method."""

        def decorator(method: Callable[..., GrabConfig]) -> Callable[..., GrabConfig]:
            @wraps(method)
            def wrapper(self: GrabConfig, *args: Any, **kwargs: Any) -> GrabConfig:
                new_config = method(self, *args, **kwargs)
                new_tracker = self._tracker.with_touched_fields(new_config, source_type, kwargs)
                return replace(new_config, _tracker=new_tracker)

            return wrapper

        return decorator

    def with_touched_fields(
        self,
        config: GrabConfig,
        source_type: str,
        overrides: dict[str, Any] | None = None,
    ) -> GrabConfigTracker:
        """Return a new tracker with the fields touched by the source recorded."""
        new_sources = {section: dict(flds) for section, flds in self.sources.items()}

        for section_name in _SECTIONS:
            section_sources = new_sources.setdefault(section_name, {})
            section_overrides = (overrides or {}).get(section_name) or {}
            for f in fields(getattr(config, section_name)):
                env_var = f.metadata.get("env")
                if source_type == "env" and env_var and os.environ.get(env_var):
                    section_sources[f.name] = f"env:{env_var}"
                elif source_type == "configure" and f.name in section_overrides:
                    section_sources[f.name] = "configure"

        return GrabConfigTracker(sources=new_sources)


# =============================================================================
# Root Configuration
# =============================================================================


@dataclass(frozen=True)
class GrabConfig:
    """
    Root configuration aggregating all sections.

    Attributes:
        instance: Target instance settings.
        credentials: API principal settings.
        backoff: Adaptive delay settings.
        launch: Per-call attempt loop and shape settings.
        metrics: Prometheus exporter settings.
    """

    instance: InstanceConfig = field(default_factory=InstanceConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    launch: LaunchConfig = field(default_factory=LaunchConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    _tracker: GrabConfigTracker = field(default_factory=GrabConfigTracker, repr=False)

    @GrabConfigTracker.track_changes("env")
    def with_env_vars(self) -> GrabConfig:
        """Return a new config with environment variables applied on top."""
        return GrabConfig(
            instance=self.instance.with_env_vars(),
            credentials=self.credentials.with_env_vars(),
            backoff=self.backoff.with_env_vars(),
            launch=self.launch.with_env_vars(),
            metrics=self.metrics.with_env_vars(),
        )

    @GrabConfigTracker.track_changes("configure")
    def with_section_overrides(
        self,
        *,
        instance: dict[str, Any] | None = None,
        credentials: dict[str, Any] | None = None,
        backoff: dict[str, Any] | None = None,
        launch: dict[str, Any] | None = None,
        metrics: dict[str, Any] | None = None,
    ) -> GrabConfig:
        """Return a new config with per-section overrides applied."""
        return GrabConfig(
            instance=self.instance.with_overrides(instance or {}),
            credentials=self.credentials.with_overrides(credentials or {}),
            backoff=self.backoff.with_overrides(backoff or {}),
            launch=self.launch.with_overrides(launch or {}),
            metrics=self.metrics.with_overrides(metrics or {}),
        )

    def validate(self) -> GrabConfig:
        """Validate every section."""
        for section_name in _SECTIONS:
            getattr(self, section_name).validate()
        return self

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """Return config values and their sources, grouped by section."""
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self._tracker.sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                    secret=f.metadata.get("secret", False),
                )
                for f in fields(section_config)
            ]
        return result


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _GRAB:
    """
    Singleton holding the process configuration.

    Example:
        >>> from ocigrab import GRAB
        >>> GRAB.configure(backoff={"decrease_enabled": True})
        >>> GRAB.config.backoff.decrease_enabled
        True
    """

    def __init__(self) -> None:
        self._config: GrabConfig = GrabConfig().with_env_vars()

    def configure(
        self,
        *,
        instance: dict[str, Any] | None = None,
        credentials: dict[str, Any] | None = None,
        backoff: dict[str, Any] | None = None,
        launch: dict[str, Any] | None = None,
        metrics: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> GrabConfig:
        """
        Configure settings on top of env vars and defaults.

        Args:
            instance: Instance overrides.
            credentials: Credential overrides.
            backoff: Backoff controller overrides.
            launch: Launch call overrides.
            metrics: Metrics exporter overrides.
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, ignores env vars entirely.

        Returns:
            The configured GrabConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = GrabConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(
            instance=instance,
            credentials=credentials,
            backoff=backoff,
            launch=launch,
            metrics=metrics,
        )
        return self.validate()

    @property
    def config(self) -> GrabConfig:
        """Access current configuration (read-only)."""
        return self._config

    def reset(self) -> GrabConfig:
        """
        Reset configuration to defaults + env vars.

        Useful for testing to ensure clean state between tests.
        """
        self._config = GrabConfig().with_env_vars()
        return self.validate()

    def validate(self) -> GrabConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        return self._config.validate()

    def explain(self, output: Callable[[str], None] = print) -> None:
        """
        Print current configuration with sources.

        Secrets (private key, key fingerprint) are masked.

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: `GRAB.explain(logger.info)`
        """
        name_width = 22
        value_width = 50

        output("ocigrab configuration:")
        output("=" * (name_width + value_width + 16))
        for section_name, entries in self._config.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                value_padded = entry.formatted_value.ljust(value_width)
                marker = "✎" if entry.source != "default" else " "
                output(f"  {entry.name} {dots} {value_padded} {marker} {entry.source}")
        output("=" * (name_width + value_width + 16))

    def __repr__(self) -> str:
        return f"GRAB(config={self._config!r})"


# Global singleton instance; env vars are read once, on import.
GRAB: _GRAB = _GRAB()
