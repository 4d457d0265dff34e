"""Errors raised while building, training and decoding with a CRF.

Configuration errors and consistency violations are fatal and raised. An
instance without any path consistent with its labels is recoverable: it is
recorded as an `InfeasibleInstance` and left out of training.
"""

from dataclasses import dataclass


class CRFError(Exception):
    """Base exception for all CRF errors."""

    pass


class ConfigError(CRFError):
    """Topology or alphabet configuration is invalid.

    Raised when:
    - A transition names a destination state that does not exist
    - A state name is added twice
    - A graph is used before `resolve()`
    - A training label is not produced by any transition
    - Order-N parameters are malformed
    """

    pass


class MalformedSequenceError(CRFError, ValueError):
    """Input and output sequences do not fit together or mention unknown labels."""

    pass


@dataclass
class InfeasibleInstance:
    """A training instance whose labels admit no finite-cost path."""

    index: int
    name: str | None
    reason: str

    def __str__(self) -> str:
        name = f" ({self.name})" if self.name else ""
        return f"instance {self.index}{name}: {self.reason}"


@dataclass
class InfeasibleInstanceError(CRFError):
    """Raised instead of excluding an infeasible instance when running strictly."""

    instance: InfeasibleInstance

    def __str__(self) -> str:
        return f"Infeasible training {self.instance}"


@dataclass
class FeasibilityChangedError(CRFError):
    """An instance changed feasibility during training, in either direction."""

    instance: InfeasibleInstance

    def __str__(self) -> str:
        return f"Feasibility changed during training for {self.instance}"
