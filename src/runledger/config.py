"""Project-level configuration from pyproject.toml.

Reads the ``[tool.runledger]`` section for the CLI's database path and the
execution loop's defaults.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from runledger.exceptions import ValidationError

IN_FLIGHT_POLICIES = ("retry", "fail")
MAX_ITERATIONS_POLICIES = ("complete", "fail")


@dataclass(frozen=True)
class LedgerConfig:
    """Configuration from [tool.runledger] in pyproject.toml."""

    db: str = "./runs.db"
    timeout_seconds: float | None = None
    max_iterations: int = 10
    lease_ttl_seconds: float = 60
    in_flight_policy: str = "retry"
    max_iterations_policy: str = "complete"

    def __post_init__(self) -> None:
        if self.in_flight_policy not in IN_FLIGHT_POLICIES:
            raise ValidationError(f"in_flight_policy must be one of {IN_FLIGHT_POLICIES}, got {self.in_flight_policy!r}")
        if self.max_iterations_policy not in MAX_ITERATIONS_POLICIES:
            raise ValidationError(
                f"max_iterations_policy must be one of {MAX_ITERATIONS_POLICIES}, got {self.max_iterations_policy!r}"
            )
        if isinstance(self.max_iterations, bool) or not isinstance(self.max_iterations, int) or self.max_iterations < 1:
            raise ValidationError(f"max_iterations must be a positive integer, got {self.max_iterations!r}")
        if self.lease_ttl_seconds <= 0:
            raise ValidationError(f"lease_ttl_seconds must be positive, got {self.lease_ttl_seconds!r}")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValidationError(f"timeout_seconds must be positive, got {self.timeout_seconds!r}")

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self.lease_ttl_seconds)

    @property
    def timeout(self) -> timedelta | None:
        return timedelta(seconds=self.timeout_seconds) if self.timeout_seconds is not None else None


def find_pyproject(start: Path | None = None) -> Path | None:
    """Walk up from start directory to find pyproject.toml."""
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / "pyproject.toml"
        if candidate.is_file():
            return candidate
    return None


def load_config(start: Path | None = None) -> LedgerConfig:
    """Load [tool.runledger] from the nearest pyproject.toml.

    Returns the default config if there is no pyproject.toml or no
    [tool.runledger] section.

    Raises:
        ValidationError: A known key has an unusable value.
    """
    path = find_pyproject(start)
    if path is None:
        return LedgerConfig()

    if sys.version_info >= (3, 11):
        import tomllib
    else:
        try:
            import tomli as tomllib
        except ImportError:
            return LedgerConfig()

    with open(path, "rb") as f:
        data = tomllib.load(f)

    section: dict[str, Any] = data.get("tool", {}).get("runledger", {})
    if not section:
        return LedgerConfig()

    known = LedgerConfig.__dataclass_fields__
    return LedgerConfig(**{key: value for key, value in section.items() if key in known})
