from .errors import ConfigError, FeasibilityChangedError, InfeasibleInstance, InfeasibleInstanceError, MalformedSequenceError
from .model import CRF
from .objective import CRFObjective, GaussianPrior, HyperbolicPrior
from .optimize import BacktrackingLineSearch, LimitedMemoryBFGS, OptimizerStatus
from .sequence import Alphabet, Instance, make_feature_sequence, make_instance
from .train import TrainingResult, train_crf

__all__ = [
    "CRF",
    "train_crf",
    "TrainingResult",
    "Instance",
    "make_instance",
    "make_feature_sequence",
    "Alphabet",
    "CRFObjective",
    "GaussianPrior",
    "HyperbolicPrior",
    "LimitedMemoryBFGS",
    "BacktrackingLineSearch",
    "OptimizerStatus",
    "ConfigError",
    "MalformedSequenceError",
    "InfeasibleInstance",
    "InfeasibleInstanceError",
    "FeasibilityChangedError",
]
