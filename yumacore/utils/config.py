"""Per-subnet hyperparameters, passed explicitly into every epoch."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from yumacore.epoch.constants import (
    BONDS_MOVING_AVERAGE_SCALE,
    DEFAULT_ACTIVITY_CUTOFF,
    DEFAULT_ALPHA_HIGH,
    DEFAULT_ALPHA_LOW,
    DEFAULT_ALPHA_SIGMOID_STEEPNESS,
    DEFAULT_BONDS_MOVING_AVERAGE,
    DEFAULT_BONDS_PENALTY,
    DEFAULT_KAPPA,
    DEFAULT_MAX_ALLOWED_VALIDATORS,
    DEFAULT_VALIDATOR_MIN_STAKE,
)
from yumacore.errors import ConfigurationError
from yumacore.math.fixed import U16_MAX

_U16_FIELDS = ("kappa", "alpha_low", "alpha_high", "bonds_penalty")
_NON_NEGATIVE_FIELDS = (
    "activity_cutoff",
    "max_allowed_validators",
    "validator_min_stake",
    "alpha_sigmoid_steepness",
)


@dataclass(frozen=True)
class SubnetHyperparameters:
    kappa: int = DEFAULT_KAPPA
    activity_cutoff: int = DEFAULT_ACTIVITY_CUTOFF
    max_allowed_validators: int = DEFAULT_MAX_ALLOWED_VALIDATORS
    validator_min_stake: int = DEFAULT_VALIDATOR_MIN_STAKE
    bonds_moving_average: int = DEFAULT_BONDS_MOVING_AVERAGE
    liquid_alpha_enabled: bool = False
    alpha_low: int = DEFAULT_ALPHA_LOW
    alpha_high: int = DEFAULT_ALPHA_HIGH
    alpha_sigmoid_steepness: int = DEFAULT_ALPHA_SIGMOID_STEEPNESS
    bonds_penalty: int = DEFAULT_BONDS_PENALTY
    yuma3_enabled: bool = False
    bonds_reset_enabled: bool = False

    def validate(self) -> "SubnetHyperparameters":
        """Raise :class:`ConfigurationError` for any value outside its domain."""
        for name in _U16_FIELDS:
            value = getattr(self, name)
            if not 0 <= value <= U16_MAX:
                raise ConfigurationError(f"{name} must be within [0, {U16_MAX}], got {value}")
        for name in _NON_NEGATIVE_FIELDS:
            value = getattr(self, name)
            if value < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {value}")
        if not 0 <= self.bonds_moving_average <= BONDS_MOVING_AVERAGE_SCALE:
            raise ConfigurationError(
                f"bonds_moving_average must be within [0, {BONDS_MOVING_AVERAGE_SCALE}], "
                f"got {self.bonds_moving_average}"
            )
        if self.alpha_low > self.alpha_high:
            raise ConfigurationError(
                f"alpha_low ({self.alpha_low}) must not exceed alpha_high ({self.alpha_high})"
            )
        if self.liquid_alpha_enabled and self.alpha_low == 0:
            raise ConfigurationError("alpha_low must be > 0 when liquid alpha is enabled")
        return self

    def replace(self, **changes: Any) -> "SubnetHyperparameters":
        values = asdict(self)
        unknown = set(changes) - set(values)
        if unknown:
            raise ConfigurationError(f"Unknown hyperparameters: {sorted(unknown)}")
        values.update(changes)
        return SubnetHyperparameters(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SubnetHyperparameters":
        known = {f.name for f in fields(cls)}
        unknown = set(payload) - known
        if unknown:
            raise ConfigurationError(f"Unknown hyperparameters: {sorted(unknown)}")
        return cls(**dict(payload))

    @classmethod
    def from_env(cls, prefix: str = "YUMA_", env: Optional[Mapping[str, str]] = None) -> "SubnetHyperparameters":
        """Build hyperparameters from ``{prefix}{FIELD}`` environment variables.

        A ``.env`` file in the working directory is loaded first; variables
        that are not set keep their defaults.
        """
        if env is None:
            load_dotenv()
            env = os.environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            try:
                if f.type in (bool, "bool"):
                    values[f.name] = _parse_bool(raw)
                else:
                    values[f.name] = int(raw)
            except ValueError as exc:
                raise ConfigurationError(f"Invalid value for {prefix}{f.name.upper()}: {raw!r}") from exc
        return cls(**values).validate()


def _parse_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)
