"""Consensus-weighted epoch engine for peer-validated subnets."""

__version__ = "0.1.0"

from yumacore.epoch.driver import EpochEngine, EpochInputs, EpochResult, evaluate_epoch
from yumacore.errors import (
    BondsResetDisabled,
    ConfigurationError,
    InvariantViolation,
    SnapshotError,
    UnknownSubnetError,
    YumaError,
)
from yumacore.math.matrix import DenseMatrix, Matrix, SparseMatrix
from yumacore.storage.state import SubnetState
from yumacore.storage.store import InMemorySubnetStore, SubnetStore
from yumacore.utils.config import SubnetHyperparameters

__all__ = [
    "BondsResetDisabled",
    "ConfigurationError",
    "DenseMatrix",
    "EpochEngine",
    "EpochInputs",
    "EpochResult",
    "InMemorySubnetStore",
    "InvariantViolation",
    "Matrix",
    "SnapshotError",
    "SparseMatrix",
    "SubnetHyperparameters",
    "SubnetState",
    "SubnetStore",
    "UnknownSubnetError",
    "YumaError",
    "evaluate_epoch",
]
