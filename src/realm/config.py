"""Configuration loader for Realm.

Loads from realm.toml with sensible defaults when file is absent.
Environment variables override secrets and model names.
Configuration is loaded once at startup and passed via dependency injection.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from realm.exceptions import ConfigError

ROLE_NAMES = ("analyst", "validator", "structurer", "renderer")


@dataclass(frozen=True)
class ModelConfig:
    """Connection settings for the language-model provider."""

    provider: str = "gemini"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-pro"
    summary_model: str = "gemini-2.5-flash"
    api_key: str = ""
    temperature: float | None = None
    timeout_seconds: float = 300.0

    def __repr__(self) -> str:
        key_display = f"***{self.api_key[-4:]}" if self.api_key else ""
        return (
            f"ModelConfig(provider={self.provider!r}, model={self.model!r}, "
            f"base_url={self.base_url!r}, api_key={key_display!r})"
        )


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int = 25
    max_consecutive_failures: int = 2
    inter_call_delay_seconds: float = 1.0


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_multiplier: float = 5.0
    min_wait: float = 0.5


@dataclass(frozen=True)
class CompressionConfig:
    enabled: bool = True
    threshold: float = 0.5
    preserve_fraction: float = 0.3
    token_limit: int = 1_000_000


@dataclass(frozen=True)
class RoleConfig:
    """Per-role overrides. Zero or empty means inherit from the loop config."""

    max_iterations: int = 0
    max_consecutive_failures: int = 0
    model: str = ""


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    event_log_path: str = "~/.realm/logs"


@dataclass(frozen=True)
class Config:
    """Top-level Realm configuration."""

    model: ModelConfig = field(default_factory=ModelConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    roles: dict[str, RoleConfig] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def log_path(self) -> Path:
        return Path(self.logging.event_log_path).expanduser()

    def role(self, name: str) -> RoleConfig:
        return self.roles.get(name, RoleConfig())

    def loop_for(self, role: str) -> LoopConfig:
        """Loop budget for one role, applying its overrides."""
        override = self.role(role)
        return LoopConfig(
            max_iterations=override.max_iterations or self.loop.max_iterations,
            max_consecutive_failures=(
                override.max_consecutive_failures
                or self.loop.max_consecutive_failures
            ),
            inter_call_delay_seconds=self.loop.inter_call_delay_seconds,
        )

    def model_for(self, role: str) -> str:
        return self.role(role).model or self.model.model


def _validate_fraction(name: str, value: float, *, inclusive_high: bool = False) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e
    upper_ok = value <= 1.0 if inclusive_high else value < 1.0
    if not (0.0 < value and upper_ok):
        raise ConfigError(f"{name} must be within (0, 1), got {value}")
    return value


def _positive_int(name: str, value: object, default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e
    if parsed <= 0:
        raise ConfigError(f"{name} must be positive, got {parsed}")
    return parsed


def _number(name: str, value: object, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def _non_negative_float(name: str, value: object, default: float) -> float:
    """Parse a float; negative values clamp to 0."""
    return max(0.0, _number(name, value, default))


def _non_negative_int(name: str, value: object, default: int) -> int:
    """Parse an integer; negative values clamp to 0."""
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e
    return max(0, parsed)


def _parse_model(data: dict, env: Mapping[str, str]) -> ModelConfig:
    defaults = ModelConfig()
    temperature = data.get("temperature")
    return ModelConfig(
        provider=data.get("provider", defaults.provider),
        base_url=data.get("base_url", defaults.base_url),
        model=env.get("REALM_MODEL") or data.get("model", defaults.model),
        summary_model=(
            env.get("REALM_SUMMARY_MODEL")
            or data.get("summary_model", defaults.summary_model)
        ),
        api_key=env.get("GEMINI_API_KEY") or data.get("api_key", ""),
        temperature=(
            _number("model.temperature", temperature, 0.0) if temperature is not None else None
        ),
        timeout_seconds=_non_negative_float(
            "model.timeout_seconds", data.get("timeout_seconds"), defaults.timeout_seconds,
        ),
    )


def _parse_roles(data: dict) -> dict[str, RoleConfig]:
    roles: dict[str, RoleConfig] = {}
    for name, role_data in data.items():
        if name not in ROLE_NAMES:
            raise ConfigError(
                f"Unknown role {name!r} in [roles]; expected one of {', '.join(ROLE_NAMES)}"
            )
        if not isinstance(role_data, dict):
            continue
        roles[name] = RoleConfig(
            max_iterations=_non_negative_int(
                f"roles.{name}.max_iterations", role_data.get("max_iterations"), 0,
            ),
            max_consecutive_failures=_non_negative_int(
                f"roles.{name}.max_consecutive_failures",
                role_data.get("max_consecutive_failures"),
                0,
            ),
            model=str(role_data.get("model", "") or ""),
        )
    return roles


def load_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for realm.toml in current directory then ~/.realm/.
    Returns default config (plus environment overrides) if no file is found.
    """
    env = os.environ if env is None else env

    if path is None:
        candidates = [
            Path.cwd() / "realm.toml",
            Path.home() / ".realm" / "realm.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    raw: dict = {}
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path, "rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e

    model = _parse_model(raw.get("model", {}), env)

    loop_data = raw.get("loop", {})
    loop_defaults = LoopConfig()
    loop = LoopConfig(
        max_iterations=_positive_int(
            "loop.max_iterations",
            env.get("REALM_MAX_ITERATIONS") or loop_data.get("max_iterations"),
            loop_defaults.max_iterations,
        ),
        max_consecutive_failures=_positive_int(
            "loop.max_consecutive_failures",
            loop_data.get("max_consecutive_failures"),
            loop_defaults.max_consecutive_failures,
        ),
        inter_call_delay_seconds=_non_negative_float(
            "loop.inter_call_delay_seconds",
            loop_data.get("inter_call_delay_seconds"),
            loop_defaults.inter_call_delay_seconds,
        ),
    )

    retry_data = raw.get("retry", {})
    retry_defaults = RetryConfig()
    retry = RetryConfig(
        max_retries=_non_negative_int(
            "retry.max_retries", retry_data.get("max_retries"), retry_defaults.max_retries,
        ),
        base_multiplier=_non_negative_float(
            "retry.base_multiplier",
            retry_data.get("base_multiplier"),
            retry_defaults.base_multiplier,
        ),
        min_wait=_non_negative_float(
            "retry.min_wait", retry_data.get("min_wait"), retry_defaults.min_wait,
        ),
    )

    comp_data = raw.get("compression", {})
    comp_defaults = CompressionConfig()
    compression = CompressionConfig(
        enabled=bool(comp_data.get("enabled", comp_defaults.enabled)),
        threshold=_validate_fraction(
            "compression.threshold",
            comp_data.get("threshold", comp_defaults.threshold),
            inclusive_high=True,
        ),
        preserve_fraction=_validate_fraction(
            "compression.preserve_fraction",
            comp_data.get("preserve_fraction", comp_defaults.preserve_fraction),
        ),
        token_limit=_positive_int(
            "compression.token_limit",
            comp_data.get("token_limit"),
            comp_defaults.token_limit,
        ),
    )

    log_data = raw.get("logging", {})
    logging_cfg = LoggingConfig(
        level=str(log_data.get("level", "INFO")).upper(),
        event_log_path=log_data.get("event_log_path", "~/.realm/logs"),
    )

    return Config(
        model=model,
        loop=loop,
        retry=retry,
        compression=compression,
        roles=_parse_roles(raw.get("roles", {})),
        logging=logging_cfg,
    )
