import numpy as np
import scipy.sparse as sp

from py_crf.costs import INFINITE_COST, combine_all, combine_groups, cost_to_probability, is_infinite
from py_crf.graph import TransitionGraph
from py_crf.sequence import pad_features
from py_crf.weights import SufficientStatistics


class Lattice:
    """Forward-backward over one input sequence in cost space.

    Position t in 0..N is the lattice column before input frame t; transition
    costs[t, k] consumes frame t and moves from column t to t+1. alpha[0] holds
    the initial costs, beta[N] the final costs. Read-only once built.
    """

    def __init__(self, graph: TransitionGraph, features: sp.csr_matrix, costs: np.ndarray):
        graph.check_resolved()
        self.graph = graph
        self.features = features
        self.costs = costs
        n, num_states = len(costs), len(graph)
        src, dst = graph.sources, graph.destinations

        alpha = np.full((n + 1, num_states), INFINITE_COST)
        alpha[0] = graph.initial_costs
        for t in range(n):
            alpha[t + 1] = combine_groups(alpha[t, src] + costs[t], dst, num_states)

        beta = np.full((n + 1, num_states), INFINITE_COST)
        beta[n] = graph.final_costs
        for t in range(n - 1, -1, -1):
            beta[t] = combine_groups(costs[t] + beta[t + 1, dst], src, num_states)

        self.alpha, self.beta = alpha, beta
        self.total_cost = float(combine_all(alpha[n] + graph.final_costs))

        if is_infinite(self.total_cost):
            self.gamma = np.full_like(alpha, INFINITE_COST)
            self.xi = np.full_like(costs, INFINITE_COST)
        else:
            self.gamma = alpha + beta - self.total_cost
            self.xi = alpha[:-1, src] + costs + beta[1:, dst] - self.total_cost

    def __len__(self) -> int:
        return len(self.costs)

    @property
    def feasible(self) -> bool:
        return not is_infinite(self.total_cost)

    def gamma_cost(self, t: int, state: int) -> float:
        return float(self.gamma[t, state])

    def gamma_probability(self, t: int, state: int) -> float:
        return float(cost_to_probability(self.gamma[t, state]))

    def xi_probability(self, t: int, source: int, destination: int) -> float:
        """Probability of moving source -> destination on frame t, summed over parallel transitions."""
        k = (self.graph.sources == source) & (self.graph.destinations == destination)
        return float(cost_to_probability(self.xi[t, k]).sum())

    def xi_cost(self, t: int, source: int, destination: int) -> float:
        k = (self.graph.sources == source) & (self.graph.destinations == destination)
        return float(combine_all(self.xi[t, k]))

    def transition_probabilities(self) -> np.ndarray:
        """Per frame, per transition probability, shape (N, transitions)."""
        return cost_to_probability(self.xi)

    def label_marginals(self) -> np.ndarray:
        """Per frame, per output label probability, shape (N, labels)."""
        num_labels = len(self.graph.labels)
        label_ids = self.graph.label_ids
        one_hot = sp.csr_matrix(
            (np.ones(len(label_ids)), (np.arange(len(label_ids)), label_ids)),
            shape=(len(label_ids), num_labels),
        )
        return np.asarray(one_hot.T @ self.transition_probabilities().T).T.reshape(len(self), num_labels)

    def increment_counts(self, stats: SufficientStatistics):
        """Add this lattice's expected counts to `stats`. A lattice with no finite path adds nothing."""
        if not self.feasible:
            return
        weights = self.graph.weights
        stats.initial += cost_to_probability(self.gamma[0])
        stats.final += cost_to_probability(self.gamma[-1])
        if not len(self):
            return

        # per frame, per weight vector: total probability of transitions tied to it
        probs = np.asarray(self.graph.tie_matrix.T @ self.transition_probabilities().T).T
        offsets = weights.offsets
        stats.weights[offsets[:-1]] += probs.sum(axis=0)

        features = pad_features(self.features, len(weights.input_alphabet))
        columns = np.unique(features.indices)
        if not len(columns):
            return
        counts = features[:, columns].toarray().T @ probs
        for w, vector in enumerate(weights.vectors):
            if not len(vector):
                continue
            pos = np.minimum(np.searchsorted(columns, vector.indices), len(columns) - 1)
            hit = columns[pos] == vector.indices
            stats.weights[offsets[w] + 1 + np.flatnonzero(hit)] += counts[pos[hit], w]
