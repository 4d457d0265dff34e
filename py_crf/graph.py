import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import numpy as np
import regex as re
import scipy.sparse as sp

from py_crf.costs import INFINITE_COST
from py_crf.errors import ConfigError, MalformedSequenceError
from py_crf.sequence import Alphabet
from py_crf.weights import WeightStore

LABEL_SEPARATOR = ","

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    source: int
    destination: str
    label: str
    weight_names: tuple[str, ...]
    weight_indices: tuple[int, ...]
    destination_index: int = -1
    index: int = -1


@dataclass
class State:
    name: str
    index: int
    transitions: list[Transition] = field(default_factory=list)


class TransitionGraph:
    """Named states with labeled, weight-tied outgoing transitions.

    Structure is edited with `add_state` / `add_transition` and the builders, then
    frozen into flat arrays by `resolve()`. Transitions of state s occupy the slice
    offsets[s]:offsets[s+1] of the flat table.
    """

    def __init__(self, weights: WeightStore, labels: Alphabet | None = None):
        self.weights = weights
        self.labels = labels if labels is not None else Alphabet()
        self.states: list[State] = []
        self._by_name: dict[str, State] = {}
        self.initial_costs = np.zeros(0)
        self.final_costs = np.zeros(0)
        self.cost_version = 0
        self.resolved = False
        self.transitions: list[Transition] = []

    def __len__(self) -> int:
        return len(self.states)

    @property
    def num_transitions(self) -> int:
        return sum(len(s.transitions) for s in self.states)

    def state(self, name: str) -> State:
        if name not in self._by_name:
            raise ConfigError(f"No state named {name!r}")
        return self._by_name[name]

    def add_state(self, name: str, initial_cost: float = 0.0, final_cost: float = 0.0) -> State:
        if name in self._by_name:
            raise ConfigError(f"State {name!r} already exists")
        state = State(name, len(self.states))
        self.states.append(state)
        self._by_name[name] = state
        self.initial_costs = np.append(self.initial_costs, initial_cost)
        self.final_costs = np.append(self.final_costs, final_cost)
        self.cost_version += 1
        self.resolved = False
        return state

    def add_transition(self, source: str, destination: str, label: str, weight_names: Sequence[str]) -> Transition:
        state = self.state(source)
        weight_names = tuple(weight_names)
        transition = Transition(
            source=state.index,
            destination=destination,
            label=label,
            weight_names=weight_names,
            weight_indices=tuple(self.weights.index_of(name) for name in weight_names),
        )
        self.labels.lookup_index(label)
        state.transitions.append(transition)
        self.resolved = False
        return transition

    def set_initial_cost(self, name: str, cost: float):
        self.initial_costs[self.state(name).index] = cost
        self.cost_version += 1

    def set_final_cost(self, name: str, cost: float):
        self.final_costs[self.state(name).index] = cost
        self.cost_version += 1

    def set_boundary_costs(self, initial: np.ndarray, final: np.ndarray):
        self.initial_costs = np.array(initial, dtype=float)
        self.final_costs = np.array(final, dtype=float)
        self.cost_version += 1

    def resolve(self) -> "TransitionGraph":
        """Bind destination names and build the flat transition table."""
        transitions = []
        for state in self.states:
            for transition in state.transitions:
                if transition.destination not in self._by_name:
                    raise ConfigError(
                        f"Transition {state.name!r} -> {transition.destination!r} names an unknown destination state"
                    )
                transition.destination_index = self._by_name[transition.destination].index
                transition.index = len(transitions)
                transitions.append(transition)
        self.transitions = transitions
        self.offsets = np.concatenate([[0], np.cumsum([len(s.transitions) for s in self.states])]).astype(np.int64)
        self.sources = np.array([t.source for t in transitions], dtype=np.int64)
        self.destinations = np.array([t.destination_index for t in transitions], dtype=np.int64)
        self.label_ids = np.array([self.labels.lookup_index(t.label) for t in transitions], dtype=np.int64)
        ties = [(t.index, w) for t in transitions for w in t.weight_indices]
        rows = np.array([k for k, _ in ties], dtype=np.int64)
        cols = np.array([w for _, w in ties], dtype=np.int64)
        # Duplicate ties on one transition sum, matching the cost definition.
        self.tie_matrix = sp.csr_matrix(
            (np.ones(len(ties)), (rows, cols)), shape=(len(transitions), len(self.weights))
        )
        self.resolved = True
        self.cost_version += 1
        logger.debug(f"Resolved graph with {len(self.states)} states and {len(transitions)} transitions")
        return self

    def check_resolved(self):
        if not self.resolved or self.tie_matrix.shape[1] != len(self.weights):
            raise ConfigError("Graph changed since resolve(); call resolve() before inference or training")

    def transitions_from(self, state: int) -> list[Transition]:
        self.check_resolved()
        return self.transitions[self.offsets[state] : self.offsets[state + 1]]

    def label_ids_for(self, labels: Iterable[str]) -> np.ndarray:
        labels = list(labels)
        ids = np.array([self.labels.lookup_index(label, add=False) for label in labels], dtype=np.int64)
        if np.any(ids < 0):
            unknown = sorted({label for label, i in zip(labels, ids) if i < 0})
            raise MalformedSequenceError(f"Unknown labels {unknown}")
        return ids

    def transition_costs(self, scores: np.ndarray, constrained_label_ids: np.ndarray | None = None) -> np.ndarray:
        """Cost of every transition at every position, shape (positions, transitions).

        `scores` holds W_w . f_t + b_w per position and weight vector. A transition
        whose label differs from the constrained label at t gets INFINITE_COST.
        """
        self.check_resolved()
        costs = -np.asarray(self.tie_matrix @ scores.T).T
        if constrained_label_ids is not None:
            if len(constrained_label_ids) != len(scores):
                raise MalformedSequenceError(
                    f"Constraint has {len(constrained_label_ids)} labels for {len(scores)} positions"
                )
            costs = np.where(self.label_ids[None, :] == constrained_label_ids[:, None], costs, INFINITE_COST)
        return costs.reshape(len(scores), len(self.transitions))

    def costs_from(self, state: int, frame, constrained_label: str | None = None) -> np.ndarray:
        """Costs of the outgoing transitions of one state for a single input frame (one feature row)."""
        frame = sp.csr_matrix(frame) if sp.issparse(frame) else sp.csr_matrix(np.atleast_2d(frame))
        if frame.shape[0] != 1:
            raise MalformedSequenceError(f"Expected a single frame, got {frame.shape[0]} rows")
        label_ids = None if constrained_label is None else self.label_ids_for([constrained_label])
        costs = self.transition_costs(self.weights.scores(frame), label_ids)[0]
        return costs[self.offsets[state] : self.offsets[state + 1]]

    # --- topology builders ---

    def add_connected_state(self, name: str, destinations: Sequence[str], initial_cost=0.0, final_cost=0.0):
        """A state whose transitions emit their destination's name, each with its own weights."""
        self.add_state(name, initial_cost, final_cost)
        for destination in destinations:
            self.add_transition(name, destination, destination, [f"{name}->{destination}:{destination}"])

    def add_fully_connected_states(self, names: Sequence[str]):
        for name in names:
            self.add_connected_state(name, names)

    def add_fully_connected_states_for_labels(self):
        self.add_fully_connected_states(self.labels.entries)

    def add_states_for_labels_connected_as_in(self, label_sequences: Iterable[Sequence[str]]):
        """First-order states over labels, keeping only label bigrams seen in `label_sequences`."""
        label_sequences = list(label_sequences)
        for labels in label_sequences:
            for label in labels:
                self.labels.lookup_index(label)
        connections = label_connections(self.labels, label_sequences)
        for label in self.labels.entries:
            self.add_connected_state(label, [dest for dest in self.labels if (label, dest) in connections])

    def add_states_for_bi_labels_connected_as_in(self, label_sequences: Iterable[Sequence[str]]):
        """Second-order states "prev,curr" for each label bigram seen in `label_sequences`.

        State "a,b" moves to "b,c" emitting c only when b,c was also seen.
        """
        label_sequences = list(label_sequences)
        for labels in label_sequences:
            for label in labels:
                self.labels.lookup_index(label)
        connections = label_connections(self.labels, label_sequences)
        labels = self.labels.entries
        for prev in labels:
            for curr in labels:
                if (prev, curr) not in connections:
                    continue
                name = prev + LABEL_SEPARATOR + curr
                self.add_state(name)
                for nxt in labels:
                    if (curr, nxt) in connections:
                        destination = curr + LABEL_SEPARATOR + nxt
                        self.add_transition(name, destination, nxt, [f"{name}->{destination}:{nxt}"])

    def add_start_state(self, name: str = "<START>") -> State:
        """Block entry everywhere but a new start state connected to every existing state."""
        destinations = [s.name for s in self.states]
        self.initial_costs[:] = INFINITE_COST
        self.add_connected_state(name, destinations, initial_cost=0.0, final_cost=INFINITE_COST)
        return self.state(name)

    def set_as_start_state(self, name: str):
        start = self.state(name).index
        self.initial_costs = np.full(len(self.states), INFINITE_COST)
        self.initial_costs[start] = 0.0
        self.cost_version += 1

    def add_order_n_states(
        self,
        orders: Sequence[int] | None = (1,),
        defaults: Sequence[bool] | None = None,
        start: str | None = None,
        forbidden: str | None = None,
        allowed: str | None = None,
        fully_connected: bool = True,
        label_sequences: Iterable[Sequence[str]] = (),
    ) -> str | None:
        """States are label histories of length max(orders); returns the name of the start state.

        Each order k gives a weight set shared by transitions whose destination
        agrees on the last k+1 labels. defaults[i] restricts the order-i weight set
        to the default feature. Label pairs "prev,curr" fully matching `forbidden`,
        or not fully matching `allowed`, are never connected.
        """
        label_sequences = list(label_sequences)
        for labels in label_sequences:
            for label in labels:
                self.labels.lookup_index(label)
        if start is not None:
            self.labels.lookup_index(start)
        if defaults is not None and (orders is None or len(defaults) != len(orders)):
            raise ConfigError("Defaults must be None or match orders")
        order = -1
        for k in orders or ():
            if k <= order:
                raise ConfigError(f"Orders must be non-negative and in ascending order, got {list(orders)}")
            order = k
        order = max(order, 0)
        no = re.compile(forbidden) if forbidden else None
        yes = re.compile(allowed) if allowed else None
        labels = self.labels.entries
        connections = None if fully_connected else label_connections(self.labels, label_sequences, start)

        def allowed_pair(prev, curr):
            pair = prev + LABEL_SEPARATOR + curr
            if no is not None and no.fullmatch(pair):
                return False
            return yes is None or bool(yes.fullmatch(pair))

        if order == 0:
            for label in labels:
                self.add_state(label)
                for dest in labels:
                    self.add_transition(label, dest, dest, [dest])
            return start

        for history in _histories(labels, order):
            if not all(allowed_pair(a, b) for a, b in zip(history, history[1:])):
                continue
            name = LABEL_SEPARATOR.join(history)
            self.add_state(name)
            for nxt in labels:
                if not allowed_pair(history[-1], nxt):
                    continue
                if connections is not None and (history[-1], nxt) not in connections:
                    continue
                weight_names = [_next_k_gram(history, k + 1, nxt) for k in orders]
                if defaults is not None:
                    for weight_name, default_only in zip(weight_names, defaults):
                        if default_only:
                            self.weights.set_selection(self.weights.index_of(weight_name), [])
                self.add_transition(name, _next_k_gram(history, order, nxt), nxt, weight_names)
                logger.debug(f"   ├─ {name} -> {_next_k_gram(history, order, nxt)} ({nxt}) {' '.join(weight_names)}")
        return None if start is None else LABEL_SEPARATOR.join([start] * order)


def _histories(labels: list[str], order: int):
    if order == 0:
        yield ()
        return
    for prefix in _histories(labels, order - 1):
        for label in labels:
            yield prefix + (label,)


def _next_k_gram(history: tuple[str, ...], k: int, nxt: str) -> str:
    return LABEL_SEPARATOR.join(list(history[len(history) + 1 - k :]) + [nxt])


def label_connections(labels: Alphabet, label_sequences: Iterable[Sequence[str]], start: str | None = None) -> set:
    """Label bigrams present in `label_sequences`; `start` connects to every label."""
    connections = set()
    for sequence in label_sequences:
        connections.update(zip(sequence, sequence[1:]))
    if start is not None:
        connections.update((start, label) for label in labels)
    return connections
