from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from yumacore.errors import ConfigurationError
from yumacore.math.fixed import U16_MAX
from yumacore.utils.config import SubnetHyperparameters

U16Rows = List[List[Tuple[int, int]]]

OUTPUT_VECTORS = (
    "rank",
    "trust",
    "consensus",
    "validator_trust",
    "incentive",
    "dividends",
    "pruning_scores",
    "emission",
)


@dataclass
class SubnetState:
    """Everything the epoch engine reads or writes for one subnet.

    Matrices are kept as sparse rows of ``(col, fraction16)``; the engine
    builds its dense or sparse working copy from them.
    """

    stake: List[int]
    weights: U16Rows
    bonds: U16Rows
    last_update: List[int]
    block_at_registration: List[int]
    hyperparameters: SubnetHyperparameters = field(default_factory=SubnetHyperparameters)
    current_block: int = 0
    validator_permit: List[bool] = field(default_factory=list)
    outputs: Dict[str, List[int]] = field(default_factory=dict)

    @property
    def n(self) -> int:
        return len(self.stake)

    @classmethod
    def empty(cls, n: int, hyperparameters: SubnetHyperparameters | None = None) -> "SubnetState":
        return cls(
            stake=[0] * n,
            weights=[[] for _ in range(n)],
            bonds=[[] for _ in range(n)],
            last_update=[0] * n,
            block_at_registration=[0] * n,
            hyperparameters=hyperparameters or SubnetHyperparameters(),
            validator_permit=[False] * n,
        )

    def validate(self) -> "SubnetState":
        n = self.n
        for name in ("weights", "bonds", "last_update", "block_at_registration"):
            if len(getattr(self, name)) != n:
                raise ConfigurationError(f"{name} has {len(getattr(self, name))} slots, expected {n}")
        if self.validator_permit and len(self.validator_permit) != n:
            raise ConfigurationError(f"validator_permit has {len(self.validator_permit)} slots, expected {n}")
        if any(s < 0 for s in self.stake):
            raise ConfigurationError("stake must be non-negative")
        for name in ("weights", "bonds"):
            for i, row in enumerate(getattr(self, name)):
                for j, value in row:
                    if not 0 <= j < n:
                        raise ConfigurationError(f"{name}[{i}] references slot {j} outside [0, {n})")
                    if not 0 <= value <= U16_MAX:
                        raise ConfigurationError(f"{name}[{i}][{j}]={value} is not a 16-bit fraction")
        self.hyperparameters.validate()
        return self

    def copy(self) -> "SubnetState":
        return SubnetState.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stake": list(self.stake),
            "weights": [[[j, v] for j, v in row] for row in self.weights],
            "bonds": [[[j, v] for j, v in row] for row in self.bonds],
            "last_update": list(self.last_update),
            "block_at_registration": list(self.block_at_registration),
            "hyperparameters": self.hyperparameters.to_dict(),
            "current_block": self.current_block,
            "validator_permit": list(self.validator_permit),
            "outputs": {k: list(v) for k, v in self.outputs.items()},
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SubnetState":
        return cls(
            stake=[int(s) for s in payload["stake"]],
            weights=[[(int(j), int(v)) for j, v in row] for row in payload["weights"]],
            bonds=[[(int(j), int(v)) for j, v in row] for row in payload["bonds"]],
            last_update=[int(b) for b in payload["last_update"]],
            block_at_registration=[int(b) for b in payload["block_at_registration"]],
            hyperparameters=SubnetHyperparameters.from_dict(payload.get("hyperparameters", {})),
            current_block=int(payload.get("current_block", 0)),
            validator_permit=[bool(p) for p in payload.get("validator_permit", [])],
            outputs={k: [int(x) for x in v] for k, v in payload.get("outputs", {}).items()},
        )
