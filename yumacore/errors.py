"""Error taxonomy for the epoch engine."""


class YumaError(Exception):
    """Base class for every error raised by yumacore."""


class ConfigurationError(YumaError, ValueError):
    """Hyperparameters or subnet state outside their valid domain; rejected before an epoch runs."""


class UnknownSubnetError(YumaError, KeyError):
    """The storage collaborator holds no state for the requested subnet."""


class InvariantViolation(YumaError, RuntimeError):
    """An internal consistency check failed; the epoch was aborted and nothing was committed."""


class BondsResetDisabled(YumaError):
    """A bonds reset was requested on a subnet that does not allow it."""


class SnapshotError(YumaError, ValueError):
    """A persisted snapshot is malformed or its content hash does not match."""
