import math

import numpy as np
from scipy.special import logsumexp

# Costs are negative log probabilities. A blocked path has this cost.
INFINITE_COST = math.inf


def is_infinite(cost):
    """True where `cost` is the infinite cost sentinel. Works on scalars and arrays."""
    return np.isposinf(cost)


def combine(a: float, b: float) -> float:
    """Stable -log(exp(-a) + exp(-b))."""
    if is_infinite(a):
        return b
    if is_infinite(b):
        return a
    if a > b:
        a, b = b, a
    return a - math.log1p(math.exp(a - b))


def combine_all(costs, axis=None):
    """Cost-space sum of `costs` along `axis`; all-infinite input gives INFINITE_COST."""
    costs = np.asarray(costs, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return -logsumexp(-costs, axis=axis)


def combine_groups(costs: np.ndarray, groups: np.ndarray, num_groups: int) -> np.ndarray:
    """Combine `costs` into `num_groups` buckets, bucket of costs[i] being groups[i].

    Empty buckets and buckets holding only infinite costs come out as INFINITE_COST.
    """
    best = np.full(num_groups, INFINITE_COST)
    np.minimum.at(best, groups, costs)
    finite = ~is_infinite(best)
    offset = np.where(finite, best, 0.0)[groups]
    with np.errstate(invalid="ignore"):
        weights = np.where(is_infinite(costs), 0.0, np.exp(offset - costs))
    totals = np.zeros(num_groups)
    np.add.at(totals, groups, weights)
    return np.where(finite, best - np.log(np.where(finite, totals, 1.0)), INFINITE_COST)


def cost_to_probability(costs):
    with np.errstate(over="ignore"):
        return np.exp(-np.asarray(costs, dtype=float))
