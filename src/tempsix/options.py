"""Configuration options for the tempsix relay.

Provides RelayOptions for the server, the sweep and the CLI.
Supports environment variable overrides for containerized deployments and
YAML files for longer-lived configuration.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


class RelayConfigError(Exception):
    """Raised when RelayOptions configuration is invalid."""

    pass


DEFAULT_CORS_ORIGINS = ["http://localhost:3000"]

# ":memory:" is for tests and explicit opt-in only: shared-cache SQLite uses
# table locks that busy_timeout does not wait on, so concurrent requests fail.
DEFAULT_DB_PATH = "tempsix.db"

# env var -> (field name, converter)
_ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "TEMPSIX_DB": ("db_path", str),
    "TEMPSIX_INACTIVITY_MINUTES": ("inactivity_minutes", float),
    "TEMPSIX_GRACE_MINUTES": ("grace_minutes", float),
    "TEMPSIX_SWEEP_INTERVAL": ("sweep_interval_seconds", float),
    "TEMPSIX_SWEEP_ENABLED": ("sweep_enabled", lambda v: v.lower() in ("1", "true", "yes")),
    "TEMPSIX_MAX_ALLOCATION_ATTEMPTS": ("max_allocation_attempts", int),
    "TEMPSIX_MAX_PAGE_LIMIT": ("max_page_limit", int),
    "TEMPSIX_CORS_ORIGINS": (
        "cors_origins",
        lambda v: [o.strip() for o in v.split(",") if o.strip()],
    ),
}


@dataclass
class RelayOptions:
    """Configuration options for the relay.

    Environment Variables:
        TEMPSIX_DB: SQLite database path (default tempsix.db; ":memory:" for an
            ephemeral single-threaded store)
        TEMPSIX_INACTIVITY_MINUTES: Idle time before the sweep marks an identity
        TEMPSIX_GRACE_MINUTES: Time a marked identity survives before purge
        TEMPSIX_SWEEP_INTERVAL: Seconds between sweep runs
        TEMPSIX_SWEEP_ENABLED: Set to 0 to disable the background sweep
        TEMPSIX_MAX_ALLOCATION_ATTEMPTS: Collision budget for generated codes
        TEMPSIX_MAX_PAGE_LIMIT: Upper bound for receive page sizes
        TEMPSIX_CORS_ORIGINS: Comma-separated list of allowed origins

    Values passed explicitly to the constructor win over the environment.

    Examples:
        options = RelayOptions()
        options = RelayOptions(db_path="/var/lib/tempsix/data.db")
        options = RelayOptions.from_yaml("tempsix.yaml")
    """

    db_path: str | None = None
    inactivity_minutes: float | None = None
    grace_minutes: float | None = None
    sweep_interval_seconds: float | None = None
    sweep_enabled: bool | None = None
    max_allocation_attempts: int | None = None
    default_page_limit: int = 20
    max_page_limit: int | None = None
    cors_origins: list[str] | None = None

    _defaults: dict[str, Any] = field(
        default_factory=lambda: {
            "db_path": DEFAULT_DB_PATH,
            "inactivity_minutes": 15.0,
            "grace_minutes": 2.0,
            "sweep_interval_seconds": 300.0,
            "sweep_enabled": True,
            "max_allocation_attempts": 10,
            "max_page_limit": 100,
            "cors_origins": list(DEFAULT_CORS_ORIGINS),
        },
        repr=False,
    )

    def __post_init__(self) -> None:
        """Apply environment overrides, fill defaults and validate."""
        self._apply_env_overrides()
        for name, default in self._defaults.items():
            if getattr(self, name) is None:
                setattr(self, name, default)
        self._validate()

    def _apply_env_overrides(self) -> None:
        """Apply environment variables to fields that were not set explicitly."""
        for env_name, (attr, convert) in _ENV_OVERRIDES.items():
            if getattr(self, attr) is not None:
                continue
            raw = os.environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                setattr(self, attr, convert(raw))
            except ValueError as e:
                raise RelayConfigError(f"Invalid value for {env_name}: {raw!r}") from e

    def _validate(self) -> None:
        """Validate that options are consistent."""
        if self.inactivity_minutes <= 0:
            raise RelayConfigError("inactivity_minutes must be positive.")
        if self.grace_minutes < 0:
            raise RelayConfigError("grace_minutes cannot be negative.")
        if self.sweep_interval_seconds <= 0:
            raise RelayConfigError("sweep_interval_seconds must be positive.")
        if self.max_allocation_attempts < 1:
            raise RelayConfigError("max_allocation_attempts must be at least 1.")
        if self.max_page_limit < 1:
            raise RelayConfigError("max_page_limit must be at least 1.")
        if not 1 <= self.default_page_limit <= self.max_page_limit:
            raise RelayConfigError(
                f"default_page_limit must be between 1 and max_page_limit ({self.max_page_limit})."
            )

    @property
    def inactivity_seconds(self) -> float:
        return self.inactivity_minutes * 60

    @property
    def grace_seconds(self) -> float:
        return self.grace_minutes * 60

    def is_in_memory(self) -> bool:
        """True if the database is an ephemeral in-memory store."""
        return self.db_path == ":memory:"

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RelayOptions":
        """Load options from a YAML file.

        Unknown keys are rejected so typos don't silently fall back to defaults.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise RelayConfigError(f"{path}: expected a mapping at the top level.")

        known = {f.name for f in fields(cls) if not f.name.startswith("_")}
        unknown = sorted(set(data) - known)
        if unknown:
            raise RelayConfigError(f"{path}: unknown option(s): {', '.join(unknown)}")

        return cls(**data)

    @classmethod
    def load(cls) -> "RelayOptions":
        """Load options from TEMPSIX_CONFIG if set, otherwise from the environment."""
        config_path = os.environ.get("TEMPSIX_CONFIG")
        if config_path:
            return cls.from_yaml(config_path)
        return cls()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        return {
            "db_path": self.db_path,
            "inactivity_minutes": self.inactivity_minutes,
            "grace_minutes": self.grace_minutes,
            "sweep_interval_seconds": self.sweep_interval_seconds,
            "sweep_enabled": self.sweep_enabled,
            "max_allocation_attempts": self.max_allocation_attempts,
            "default_page_limit": self.default_page_limit,
            "max_page_limit": self.max_page_limit,
            "cors_origins": list(self.cors_origins),
        }
