import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import numpy as np

from py_crf.costs import is_infinite
from py_crf.errors import FeasibilityChangedError, InfeasibleInstance, InfeasibleInstanceError, MalformedSequenceError
from py_crf.model import CRF
from py_crf.sequence import Instance
from py_crf.weights import Constraints, Expectations


@dataclass
class GaussianPrior:
    variance: float = 1.0

    def value(self, params: np.ndarray) -> float:
        return float(np.sum(params**2) / (2 * self.variance))

    def gradient(self, params: np.ndarray) -> np.ndarray:
        return params / self.variance


@dataclass
class HyperbolicPrior:
    """slope * log cosh(sharpness * w): close to an L1 penalty but smooth at zero."""

    slope: float = 0.2
    sharpness: float = 10.0

    def value(self, params: np.ndarray) -> float:
        x = np.abs(self.sharpness * params)
        # log cosh x = x + log(1 + exp(-2x)) - log 2, stable for large x
        return float(self.slope * np.sum(x + np.log1p(np.exp(-2 * x)) - np.log(2.0)))

    def gradient(self, params: np.ndarray) -> np.ndarray:
        return self.slope * self.sharpness * np.tanh(self.sharpness * params)


@dataclass
class NoPrior:
    def value(self, params: np.ndarray) -> float:
        return 0.0

    def gradient(self, params: np.ndarray) -> np.ndarray:
        return np.zeros_like(params)


@dataclass
class Cached:
    value: Any
    version: tuple[int, int]


@dataclass
class _Partial:
    value: float
    constraints: Constraints
    expectations: Expectations
    infeasible: list[InfeasibleInstance]
    recovered: list[InfeasibleInstance]


class CRFObjective:
    """Negative conditional log-likelihood of labeled instances plus a prior, as a function of the parameters.

    Parameters are laid out as the negated finite initial costs, the negated
    finite final costs, then the weight store (per vector: default, values).
    Infinite boundary costs are structure, not parameters.

    The first evaluation decides which instances are infeasible (no path fits
    their labels); they are logged and left out from then on, or raise
    InfeasibleInstanceError when `strict`. A feasible instance that later
    becomes infeasible raises FeasibilityChangedError, as does an excluded
    instance whose labels become reachable; excluded instances are only
    checked, never counted.
    """

    def __init__(
        self,
        crf: CRF,
        instances: list[Instance],
        prior=None,
        strict: bool = False,
        num_workers: int = 1,
        logger: logging.Logger | None = None,
    ):
        self.crf = crf
        self.instances = list(instances)
        self.prior = prior if prior is not None else GaussianPrior()
        self.strict = strict
        self.num_workers = max(1, num_workers)
        self.logger = logger or logging.getLogger(__name__)
        for i, instance in enumerate(self.instances):
            if instance.labels is None:
                raise MalformedSequenceError(f"Training instance {instance.name or i} has no labels")
        crf.check_labels(self.instances)
        self._initial_mask = ~is_infinite(crf.graph.initial_costs)
        self._final_mask = ~is_infinite(crf.graph.final_costs)
        self.infeasible: list[InfeasibleInstance] | None = None
        self._excluded: set[int] = set()
        self._value: Cached | None = None
        self._gradient: Cached | None = None
        self.num_evaluations = 0

    # --- parameters ---

    @property
    def num_parameters(self) -> int:
        return int(self._initial_mask.sum() + self._final_mask.sum()) + self.crf.weights.num_parameters

    def get_parameters(self) -> np.ndarray:
        graph = self.crf.graph
        return np.concatenate(
            [
                -graph.initial_costs[self._initial_mask],
                -graph.final_costs[self._final_mask],
                self.crf.weights.get_parameters(),
            ]
        )

    def set_parameters(self, params: np.ndarray):
        params = np.asarray(params, dtype=float)
        if len(params) != self.num_parameters:
            raise ValueError(f"Expected {self.num_parameters} parameters, got {len(params)}")
        graph = self.crf.graph
        num_initial, num_final = int(self._initial_mask.sum()), int(self._final_mask.sum())
        initial, final = graph.initial_costs.copy(), graph.final_costs.copy()
        initial[self._initial_mask] = -params[:num_initial]
        final[self._final_mask] = -params[num_initial : num_initial + num_final]
        graph.set_boundary_costs(initial, final)
        self.crf.weights.set_parameters(params[num_initial + num_final :])

    def get_parameter(self, index: int) -> float:
        return float(self.get_parameters()[index])

    def set_parameter(self, index: int, value: float):
        params = self.get_parameters()
        params[index] = value
        self.set_parameters(params)

    def frozen_mask(self) -> np.ndarray:
        num_boundary = int(self._initial_mask.sum() + self._final_mask.sum())
        return np.concatenate([np.zeros(num_boundary, dtype=bool), self.crf.weights.frozen_parameter_mask()])

    # --- value and gradient ---

    def value(self) -> float:
        if self._value is None or self._value.version != self.crf.version:
            self._evaluate()
        return self._value.value

    def gradient(self) -> np.ndarray:
        """Gradient at the current parameters. Read-only; a new array after any parameter change."""
        if self._gradient is None or self._gradient.version != self.crf.version:
            self._evaluate()
        return self._gradient.value

    @property
    def excluded(self) -> list[InfeasibleInstance]:
        return list(self.infeasible or [])

    def _evaluate_chunk(self, indices: list[int]) -> _Partial:
        crf = self.crf
        num_states, num_weights = crf.num_states, crf.weights.num_parameters
        partial = _Partial(0.0, Constraints(num_states, num_weights), Expectations(num_states, num_weights), [], [])
        for i in indices:
            instance = self.instances[i]
            labeled = crf.forward_backward(instance, instance.labels)
            if i in self._excluded:
                # excluded instances only get their feasibility rechecked
                if labeled.feasible:
                    partial.recovered.append(InfeasibleInstance(i, instance.name, "labels became reachable"))
                continue
            if not labeled.feasible:
                partial.infeasible.append(InfeasibleInstance(i, instance.name, "no path is consistent with its labels"))
                continue
            unlabeled = crf.forward_backward(instance)
            partial.value += labeled.total_cost - unlabeled.total_cost
            labeled.increment_counts(partial.constraints)
            unlabeled.increment_counts(partial.expectations)
        return partial

    def _evaluate(self):
        version = self.crf.version
        self.crf.weights.matrix()  # build the shared weight matrix before workers read it
        indices = list(range(len(self.instances)))
        if self.num_workers > 1 and len(indices) > 1:
            chunks = [list(c) for c in np.array_split(indices, min(self.num_workers, len(indices)))]
            with ThreadPoolExecutor(max_workers=self.num_workers) as pool:
                partials = list(pool.map(self._evaluate_chunk, chunks))
        else:
            partials = [self._evaluate_chunk(indices)]

        total = partials[0]
        for partial in partials[1:]:
            total.value += partial.value
            total.constraints.add(partial.constraints)
            total.expectations.add(partial.expectations)
            total.infeasible.extend(partial.infeasible)
            total.recovered.extend(partial.recovered)
        self._apply_feasibility_policy(total.infeasible, total.recovered)

        params = self.get_parameters()
        value = total.value + self.prior.value(params)
        mi, mf = self._initial_mask, self._final_mask
        expectations, constraints = total.expectations, total.constraints
        gradient = np.concatenate(
            [
                expectations.initial[mi] - constraints.initial[mi],
                expectations.final[mf] - constraints.final[mf],
                expectations.weights - constraints.weights,
            ]
        )
        gradient += self.prior.gradient(params)
        gradient[self.frozen_mask()] = 0.0
        gradient.flags.writeable = False

        self.num_evaluations += 1
        self._value = Cached(float(value), version)
        self._gradient = Cached(gradient, version)
        self.logger.debug(
            f"   ├─ Evaluation {self.num_evaluations}: value {value:.6g}, |gradient|_inf {np.max(np.abs(gradient), initial=0.0):.4g}"
        )

    def _apply_feasibility_policy(self, infeasible: list[InfeasibleInstance], recovered: list[InfeasibleInstance]):
        infeasible = sorted(infeasible, key=lambda x: x.index)
        if recovered:
            raise FeasibilityChangedError(min(recovered, key=lambda x: x.index))
        if self.infeasible is None:
            if infeasible and self.strict:
                raise InfeasibleInstanceError(infeasible[0])
            for record in infeasible:
                self.logger.warning(f"⚠️  Excluding infeasible {record}")
            self.infeasible = infeasible
            self._excluded = {record.index for record in infeasible}
        elif infeasible:
            raise FeasibilityChangedError(infeasible[0])
