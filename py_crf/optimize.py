import logging
import math
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import numpy as np


class Optimizable(Protocol):
    def get_parameters(self) -> np.ndarray: ...

    def set_parameters(self, params: np.ndarray): ...

    def value(self) -> float: ...

    def gradient(self) -> np.ndarray: ...


class OptimizerStatus(Enum):
    CONVERGED = "converged"
    LINE_SEARCH_FAILED = "line search failed"
    ITERATION_LIMIT = "stopped, not converged"
    STOPPED = "stopped by evaluator"


@dataclass
class LineSearchResult:
    success: bool
    step: float
    value: float
    trials: int
    reason: str = ""


@dataclass
class BacktrackingLineSearch:
    """Backtracking along a descent direction until f(x + a d) <= f(x) + c a <g, d>.

    Tries the full step first, then the minimiser of a quadratic (first
    backtrack) or cubic (later ones) model of f along d, kept within
    [0.1 a, 0.5 a]. Gives up once the step is negligible relative to the
    parameter scale, leaving the parameters where they started.
    """

    max_step: float = 100.0
    sufficient_decrease: float = 1e-4
    relative_tolerance: float = 1e-10
    max_iterations: int = 100

    def search(self, fn: Optimizable, direction: np.ndarray) -> LineSearchResult:
        x_old = np.array(fn.get_parameters(), dtype=float)
        f_old = fn.value()
        direction = np.array(direction, dtype=float)
        norm = np.linalg.norm(direction)
        if norm > self.max_step:
            direction *= self.max_step / norm
        slope = float(fn.gradient() @ direction)
        if not slope < 0:
            return LineSearchResult(False, 0.0, f_old, 0, f"not a descent direction (slope {slope:.4g})")

        test = np.max(np.abs(direction) / np.maximum(np.abs(x_old), 1.0))
        min_step = self.relative_tolerance / test
        step, prev_step, prev_value = 1.0, None, None
        for trial in range(1, self.max_iterations + 1):
            fn.set_parameters(x_old + step * direction)
            value = fn.value()
            if step < min_step:
                fn.set_parameters(x_old)
                return LineSearchResult(False, 0.0, f_old, trial, f"step {step:.3g} below minimum {min_step:.3g}")
            if math.isfinite(value) and value <= f_old + self.sufficient_decrease * step * slope:
                return LineSearchResult(True, step, value, trial)

            if not math.isfinite(value):
                step, prev_step = 0.5 * step, None
                continue
            if prev_step is None:
                next_step = -slope * step**2 / (2.0 * (value - f_old - slope * step))
            else:
                rhs1 = value - f_old - step * slope
                rhs2 = prev_value - f_old - prev_step * slope
                a = (rhs1 / step**2 - rhs2 / prev_step**2) / (step - prev_step)
                b = (-prev_step * rhs1 / step**2 + step * rhs2 / prev_step**2) / (step - prev_step)
                if a == 0.0:
                    next_step = -slope / (2.0 * b)
                else:
                    disc = b * b - 3.0 * a * slope
                    if disc < 0.0:
                        next_step = 0.5 * step
                    elif b <= 0.0:
                        next_step = (-b + math.sqrt(disc)) / (3.0 * a)
                    else:
                        next_step = -slope / (b + math.sqrt(disc))
            next_step = min(next_step, 0.5 * step)
            prev_step, prev_value = step, value
            step = max(next_step, 0.1 * step)

        fn.set_parameters(x_old)
        return LineSearchResult(False, 0.0, f_old, self.max_iterations, "too many trials")


@dataclass
class OptimizationResult:
    status: OptimizerStatus
    value: float
    gradient_norm: float
    iterations: int
    history: list[float] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status == OptimizerStatus.CONVERGED


class LimitedMemoryBFGS:
    """L-BFGS minimiser keeping the last `memory` (s, y) correction pairs.

    State carries over between `optimize` calls; call `reset()` after changing
    the objective out of band.
    """

    def __init__(
        self,
        fn: Optimizable,
        memory: int = 4,
        tolerance: float = 1e-4,
        gradient_tolerance: float = 1e-3,
        eps: float = 1e-5,
        max_iterations: int = 300,
        line_search: BacktrackingLineSearch | None = None,
        logger: logging.Logger | None = None,
    ):
        self.fn = fn
        self.memory = memory
        self.tolerance = tolerance
        self.gradient_tolerance = gradient_tolerance
        self.eps = eps
        self.max_iterations = max_iterations
        self.line_search = line_search or BacktrackingLineSearch()
        self.logger = logger or logging.getLogger(__name__)
        self.reset()

    def reset(self):
        self.corrections = deque(maxlen=self.memory)
        self._params = self._gradient = self._value = None
        self.iterations = 0

    def _two_loop(self, g: np.ndarray) -> np.ndarray:
        q = g.copy()
        alphas = []
        for s, y, rho in reversed(self.corrections):
            a = rho * (s @ q)
            q -= a * y
            alphas.append(a)
        if self.corrections:
            s, y, _ = self.corrections[-1]
            q *= (s @ y) / (y @ y)
        for (s, y, rho), a in zip(self.corrections, reversed(alphas)):
            b = rho * (y @ q)
            q += s * (a - b)
        return -q

    def _result(self, status: OptimizerStatus, history: list[float]) -> OptimizationResult:
        g = self.fn.gradient()
        return OptimizationResult(status, self.fn.value(), float(np.linalg.norm(g)), self.iterations, history)

    def optimize(self, callback: Callable[[int, float], bool] | None = None) -> OptimizationResult:
        """Run until convergence, line-search failure, the iteration cap, or `callback` returning True."""
        fn = self.fn
        history = []
        if self._params is None:
            self._params = np.array(fn.get_parameters(), dtype=float)
            self._value = fn.value()
            self._gradient = np.array(fn.gradient(), dtype=float)
            history.append(self._value)
            if not np.any(self._gradient):
                return self._result(OptimizerStatus.CONVERGED, history)
            direction = -self._gradient / np.linalg.norm(self._gradient)
            search = self.line_search.search(fn, direction)
            if not search.success:
                self.logger.info(f"   └─ Initial line search failed: {search.reason}")
                return self._result(OptimizerStatus.LINE_SEARCH_FAILED, history)

        while self.iterations < self.max_iterations:
            self.iterations += 1
            params = np.array(fn.get_parameters(), dtype=float)
            value = fn.value()
            gradient = np.array(fn.gradient(), dtype=float)
            history.append(value)
            self.logger.debug(f"   ├─ L-BFGS iteration {self.iterations}: value {value:.6g}")

            if 2.0 * abs(value - self._value) <= self.tolerance * (abs(value) + abs(self._value) + self.eps):
                return self._result(OptimizerStatus.CONVERGED, history)
            if not np.any(gradient) or np.max(np.abs(gradient)) < self.gradient_tolerance:
                return self._result(OptimizerStatus.CONVERGED, history)
            if callback is not None and callback(self.iterations, value):
                return self._result(OptimizerStatus.STOPPED, history)

            s, y = params - self._params, gradient - self._gradient
            sy = s @ y
            if sy > 0:
                self.corrections.append((s, y, 1.0 / sy))
            direction = self._two_loop(gradient)
            if not direction @ gradient < 0:
                self.logger.debug("   ├─ Not a descent direction, resetting history")
                self.corrections.clear()
                direction = -gradient
            self._params, self._gradient, self._value = params, gradient, value

            search = self.line_search.search(fn, direction)
            if not search.success:
                self.logger.info(f"   └─ Line search failed: {search.reason}")
                return self._result(OptimizerStatus.LINE_SEARCH_FAILED, history)

        return self._result(OptimizerStatus.ITERATION_LIMIT, history)
