import heapq
import logging
from dataclasses import dataclass

import numpy as np

from py_crf.costs import INFINITE_COST, is_infinite
from py_crf.graph import TransitionGraph

logger = logging.getLogger(__name__)


@dataclass
class ViterbiPath:
    """A decoded path: one label per frame, the N+1 visited states and the total cost."""

    labels: tuple[str, ...]
    states: tuple[str, ...]
    cost: float
    transitions: tuple[int, ...] = ()

    def __len__(self) -> int:
        return len(self.labels)

    @property
    def feasible(self) -> bool:
        return not is_infinite(self.cost)


def _no_path(n: int) -> ViterbiPath:
    logger.warning(f"No finite-cost path through {n} frames; returning an empty path")
    return ViterbiPath((), (), INFINITE_COST)


def _make_path(graph: TransitionGraph, last_state: int, transitions: list[int], cost: float) -> ViterbiPath:
    transitions = transitions[::-1]
    states = [graph.states[graph.sources[k]].name for k in transitions] + [graph.states[last_state].name]
    labels = [graph.transitions[k].label for k in transitions]
    return ViterbiPath(tuple(labels), tuple(states), float(cost), tuple(transitions))


def viterbi(graph: TransitionGraph, costs: np.ndarray) -> ViterbiPath:
    """Minimum-cost path for a (frames x transitions) cost table. Ties go to the lower transition index."""
    graph.check_resolved()
    n, num_states = len(costs), len(graph)
    src, dst = graph.sources, graph.destinations
    ks = np.arange(len(src))
    delta = graph.initial_costs.copy()
    back = np.full((n, num_states), -1, dtype=np.int64)
    for t in range(n):
        candidates = delta[src] + costs[t]
        order = np.lexsort((ks, candidates, dst))
        reached, first = np.unique(dst[order], return_index=True)
        delta = np.full(num_states, INFINITE_COST)
        delta[reached] = candidates[order[first]]
        back[t, reached] = order[first]

    totals = delta + graph.final_costs
    state = int(np.argmin(totals))
    if is_infinite(totals[state]):
        return _no_path(n)
    path, s = [], state
    for t in range(n - 1, -1, -1):
        k = back[t, s]
        path.append(int(k))
        s = src[k]
    return _make_path(graph, state, path, totals[state])


def viterbi_nbest(graph: TransitionGraph, costs: np.ndarray, n_best: int) -> list[ViterbiPath]:
    """The `n_best` lowest-cost distinct paths, cheapest first.

    Each (frame, state) keeps its n_best cheapest partial paths as
    (cost, transition, previous rank) entries. Ties are broken by discovery
    order: transition index, then rank. Returns [] when no path is finite.
    """
    if n_best < 1:
        raise ValueError(f"n_best must be at least 1, got {n_best}")
    graph.check_resolved()
    n, num_states = len(costs), len(graph)
    src, dst = graph.sources, graph.destinations
    incoming = [[] for _ in range(num_states)]
    for k in range(len(src)):
        incoming[dst[k]].append(k)

    entries = [[[(c, -1, -1)] if not is_infinite(c) else [] for c in graph.initial_costs]]
    for t in range(n):
        column = []
        for s in range(num_states):
            candidates = (
                (prev_cost + costs[t, k], k, rank)
                for k in incoming[s]
                if not is_infinite(costs[t, k])
                for rank, (prev_cost, _, _) in enumerate(entries[t][src[k]])
            )
            column.append(heapq.nsmallest(n_best, candidates, key=lambda e: (e[0], e[1], e[2])))
        entries.append(column)

    finals = (
        (cost + graph.final_costs[s], s, rank)
        for s in range(num_states)
        for rank, (cost, _, _) in enumerate(entries[n][s])
        if not is_infinite(graph.final_costs[s])
    )
    paths = []
    for total, last_state, last_rank in heapq.nsmallest(n_best, finals, key=lambda e: (e[0], e[1], e[2])):
        if is_infinite(total):
            continue
        path, s, rank = [], last_state, last_rank
        for t in range(n, 0, -1):
            _, k, rank = entries[t][s][rank]
            path.append(k)
            s = src[k]
        paths.append(_make_path(graph, last_state, path, total))
    if not paths:
        _no_path(n)
    return paths
