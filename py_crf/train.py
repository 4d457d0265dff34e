from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np

from py_crf.errors import InfeasibleInstance
from py_crf.model import CRF
from py_crf.objective import CRFObjective, GaussianPrior, HyperbolicPrior, NoPrior
from py_crf.optimize import LimitedMemoryBFGS, OptimizerStatus
from py_crf.sequence import Instance
from py_crf.utils import create_logger, log_examples


@dataclass
class TrainingResult:
    status: OptimizerStatus
    value: float
    gradient_norm: float
    iterations: int
    excluded: list[InfeasibleInstance] = field(default_factory=list)
    history: list[float] = field(default_factory=list)

    @property
    def converged(self) -> bool:
        return self.status == OptimizerStatus.CONVERGED


def make_prior(prior: str, gaussian_variance: float, hyperbolic_slope: float, hyperbolic_sharpness: float):
    if prior == "gaussian":
        return GaussianPrior(gaussian_variance)
    if prior == "hyperbolic":
        return HyperbolicPrior(hyperbolic_slope, hyperbolic_sharpness)
    if prior == "none":
        return NoPrior()
    raise ValueError(f"Unknown prior: {prior}")


def split_proportions(instances: list[Instance], proportions: Sequence[float], seed: int = 1) -> list[list[Instance]]:
    """One subset per proportion, taken from the front of a single seeded shuffle, so subsets are nested."""
    order = np.random.default_rng(seed).permutation(len(instances))
    subsets = []
    for proportion in proportions:
        if not 0.0 < proportion <= 1.0:
            raise ValueError(f"Training proportions must be in (0, 1], got {proportion}")
        size = max(1, int(round(proportion * len(instances))))
        subsets.append([instances[i] for i in sorted(order[:size])])
    return subsets


def train_crf(
    crf: CRF,
    instances: list[Instance],
    prior: str = "gaussian",
    gaussian_variance: float = 1.0,
    hyperbolic_slope: float = 0.2,
    hyperbolic_sharpness: float = 10.0,
    dimension_weights: str | None = "sparse",
    max_iterations: int = 300,
    memory: int = 4,
    tolerance: float = 1e-4,
    gradient_tolerance: float = 1e-3,
    strict: bool = False,
    num_workers: int = 1,
    evaluator: Callable[[CRF, int], bool] | None = None,
    evaluate_every: int = 1,
    training_proportions: Sequence[float] | None = None,
    iterations_per_proportion: int = 10,
    verbose: bool = False,
) -> tuple[CRF, TrainingResult]:
    """Fits the CRF's boundary costs and weights by L-BFGS on the penalised conditional likelihood.
    Args:
        crf: Model with its topology in place; resolved here if needed
        instances: Labeled training instances
        prior: "gaussian", "hyperbolic" or "none"
        gaussian_variance: Variance of the Gaussian prior
        hyperbolic_slope: Slope of the hyperbolic prior
        hyperbolic_sharpness: Sharpness of the hyperbolic prior
        dimension_weights: "sparse" gives weights only to features seen on gold transitions,
                           "dense" to every feature, None keeps the current dimensions
        max_iterations: L-BFGS iteration cap
        memory: Number of L-BFGS correction pairs kept
        tolerance: Relative change in objective value that counts as converged
        gradient_tolerance: Gradient infinity norm that counts as converged
        strict: If True, an instance with no path consistent with its labels is an error instead of excluded
        num_workers: Threads used to evaluate instances
        evaluator: Called as evaluator(crf, iteration) every `evaluate_every` iterations; returning True stops training
        evaluate_every: Iterations between evaluator calls
        training_proportions: If given, first train for `iterations_per_proportion` iterations on each of these
                              fractions of the instances (a fixed shuffle), then on all of them
        iterations_per_proportion: Iterations spent on each proportion; they count against max_iterations
        verbose: Whether to print per-iteration details

    Returns:
        Tuple containing the trained CRF and a TrainingResult
    """
    logger = create_logger("train_crf", verbose)

    if not instances:
        raise ValueError("Input 'instances' list cannot be empty.")
    subsets = split_proportions(instances, training_proportions or ())
    if not crf.graph.resolved:
        crf.resolve()

    if dimension_weights == "sparse":
        crf.set_weights_dimension_as_in(instances)
    elif dimension_weights == "dense":
        crf.set_weights_dimension_densely()
    elif dimension_weights is not None:
        raise ValueError(f"Unknown weight dimensioning: {dimension_weights}")

    prior_model = make_prior(prior, gaussian_variance, hyperbolic_slope, hyperbolic_sharpness)
    stages = [(subset, iterations_per_proportion) for subset in subsets]
    stages.append((list(instances), max(max_iterations - iterations_per_proportion * len(subsets), 0)))

    logger.info(f"🏋️ Training CRF on {len(instances):,} instances")
    logger.debug(f"   ├─ States: {crf.num_states:,}, transitions: {len(crf.graph.transitions):,}")
    logger.debug(f"   ├─ Weight vectors: {len(crf.weights):,}, input features: {len(crf.input_alphabet):,}")
    logger.debug(f"   ├─ Weight parameters: {crf.weights.num_parameters:,}")
    logger.debug(f"   └─ Prior: {prior_model}")

    iterations, history = 0, []
    for stage_instances, stage_iterations in stages:
        objective = CRFObjective(
            crf,
            stage_instances,
            prior=prior_model,
            strict=strict,
            num_workers=num_workers,
            logger=logger,
        )
        if len(stages) > 1:
            share = len(stage_instances) / len(instances)
            logger.info(f"📈 Training on {share:.0%} of the data ({len(stage_instances):,} instances) for {stage_iterations} iterations")

        def callback(iteration: int, value: float, offset=iterations) -> bool:
            iteration += offset
            if evaluator is None or iteration % evaluate_every:
                return False
            return bool(evaluator(crf, iteration))

        optimizer = LimitedMemoryBFGS(
            objective,
            memory=memory,
            tolerance=tolerance,
            gradient_tolerance=gradient_tolerance,
            max_iterations=stage_iterations,
            logger=logger,
        )
        outcome = optimizer.optimize(callback=callback)
        iterations += outcome.iterations
        history.extend(outcome.history)
        if outcome.status == OptimizerStatus.STOPPED:
            break

    result = TrainingResult(
        status=outcome.status,
        value=outcome.value,
        gradient_norm=outcome.gradient_norm,
        iterations=iterations,
        excluded=objective.excluded,
        history=history,
    )

    if result.converged:
        logger.info(f"🎉 Training converged after {result.iterations} iterations! Objective: {result.value:.4f}")
    else:
        logger.info(f"⚠️  Training {result.status.value} after {result.iterations} iterations. Objective: {result.value:.4f}")
    logger.debug(f"   ├─ Gradient norm: {result.gradient_norm:.4g}")
    logger.debug(f"   ├─ Objective evaluations: {objective.num_evaluations}")
    if result.excluded:
        logger.debug(f"   ├─ Excluded {len(result.excluded):,} infeasible instances")
    defaults = [(crf.weights.name_of(i), float(d)) for i, d in enumerate(crf.weights.defaults)]
    mean_default = float(np.mean(crf.weights.defaults)) if len(crf.weights) else 0.0
    logger.debug(f"   └─ Default weights, mean {mean_default:.4g}:")
    log_examples(logger, defaults, "default")

    return crf, result
