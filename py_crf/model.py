import logging
from collections.abc import Iterable, Sequence

import numpy as np
import scipy.sparse as sp

from py_crf.costs import is_infinite
from py_crf.errors import ConfigError, MalformedSequenceError
from py_crf.graph import TransitionGraph
from py_crf.lattice import Lattice
from py_crf.sequence import Alphabet, Instance
from py_crf.viterbi import ViterbiPath, viterbi, viterbi_nbest
from py_crf.weights import SparseVector, WeightStore

logger = logging.getLogger(__name__)


def _as_features(x: Instance | sp.spmatrix) -> sp.csr_matrix:
    features = x.features if isinstance(x, Instance) else x
    if not sp.issparse(features) or features.ndim != 2:
        raise MalformedSequenceError("Input must be a 2-d sparse matrix of positions x features")
    return sp.csr_matrix(features)


class CRF:
    """Linear-chain CRF: a transition graph whose transition costs come from a weight store."""

    def __init__(self, input_alphabet: Alphabet | None = None, output_alphabet: Alphabet | None = None):
        self.input_alphabet = input_alphabet if input_alphabet is not None else Alphabet()
        self.output_alphabet = output_alphabet if output_alphabet is not None else Alphabet()
        self.weights = WeightStore(self.input_alphabet)
        self.graph = TransitionGraph(self.weights, self.output_alphabet)

    @property
    def version(self) -> tuple[int, int]:
        return self.weights.version, self.graph.cost_version

    @property
    def num_states(self) -> int:
        return len(self.graph)

    # --- topology ---

    def add_state(self, name: str, initial_cost: float = 0.0, final_cost: float = 0.0):
        return self.graph.add_state(name, initial_cost, final_cost)

    def add_transition(self, source: str, destination: str, label: str, weight_names: Sequence[str]):
        return self.graph.add_transition(source, destination, label, weight_names)

    def add_fully_connected_states(self, names: Sequence[str]):
        self.graph.add_fully_connected_states(names)

    def add_fully_connected_states_for_labels(self):
        self.graph.add_fully_connected_states_for_labels()

    def add_states_for_labels_connected_as_in(self, instances: Iterable[Instance]):
        self.graph.add_states_for_labels_connected_as_in([i.labels for i in instances if i.labels is not None])

    def add_states_for_bi_labels_connected_as_in(self, instances: Iterable[Instance]):
        self.graph.add_states_for_bi_labels_connected_as_in([i.labels for i in instances if i.labels is not None])

    def add_order_n_states(self, instances: Iterable[Instance], orders=(1,), **kwargs) -> str | None:
        label_sequences = [i.labels for i in instances if i.labels is not None]
        return self.graph.add_order_n_states(orders, label_sequences=label_sequences, **kwargs)

    def add_start_state(self, name: str = "<START>"):
        return self.graph.add_start_state(name)

    def set_as_start_state(self, name: str):
        self.graph.set_as_start_state(name)

    def resolve(self) -> "CRF":
        self.graph.resolve()
        return self

    # --- weights ---

    def set_weights_dimension_as_in(self, instances: Iterable[Instance]):
        """Give each weight vector the features seen on transitions that can carry the gold labels."""
        graph = self.graph
        locations = [[] for _ in range(len(self.weights))]
        for instance in instances:
            if instance.labels is None:
                continue
            lattice = self.forward_backward(instance, instance.labels)
            if not lattice.feasible:
                logger.warning(f"Skipping {instance.name or 'instance'} while dimensioning weights: no path fits its labels")
                continue
            features = _as_features(instance)
            for t in range(len(instance)):
                row = features.indices[features.indptr[t] : features.indptr[t + 1]]
                ks = np.flatnonzero(~is_infinite(lattice.xi[t]))
                for w in np.unique(graph.tie_matrix[ks].indices):
                    locations[w].append(row)
        for w, rows in enumerate(locations):
            if rows:
                self.weights.add_locations(w, np.concatenate(rows))
        logger.debug(
            f"Dimensioned {len(self.weights)} weight vectors with {self.weights.num_parameters - len(self.weights):,} feature weights"
        )

    def set_weights_dimension_densely(self):
        features = np.arange(len(self.input_alphabet))
        for w in range(len(self.weights)):
            self.weights.add_locations(w, features)

    def _weights_index(self, name: str) -> int:
        index = self.weights.index_of(name, add=False)
        if index < 0:
            raise ConfigError(f"No weight vector named {name!r}")
        return index

    def freeze_weights(self, name: str):
        self.weights.freeze(self._weights_index(name))

    def unfreeze_weights(self, name: str):
        self.weights.unfreeze(self._weights_index(name))

    def check_labels(self, instances: Iterable[Instance]):
        """Raise ConfigError when an instance uses a label that no transition emits."""
        self.graph.check_resolved()
        produced = {t.label for t in self.graph.transitions}
        for i, instance in enumerate(instances):
            missing = set(instance.labels or ()) - produced
            if missing:
                raise ConfigError(f"Labels {sorted(missing)} of instance {instance.name or i} are emitted by no transition")

    # --- inference ---

    def transition_costs(self, x: Instance | sp.spmatrix, labels: Sequence[str] | None = None) -> np.ndarray:
        features = _as_features(x)
        if labels is not None and len(labels) != features.shape[0]:
            raise MalformedSequenceError(f"Input has {features.shape[0]} positions but output has {len(labels)} labels")
        label_ids = None if labels is None else self.graph.label_ids_for(labels)
        return self.graph.transition_costs(self.weights.scores(features), label_ids)

    def forward_backward(self, x: Instance | sp.spmatrix, labels: Sequence[str] | None = None) -> Lattice:
        """Lattice over `x`, constrained to `labels` when given."""
        features = _as_features(x)
        return Lattice(self.graph, features, self.transition_costs(features, labels))

    def viterbi(self, x: Instance | sp.spmatrix) -> ViterbiPath:
        return viterbi(self.graph, self.transition_costs(x))

    def viterbi_nbest(self, x: Instance | sp.spmatrix, n_best: int) -> list[ViterbiPath]:
        return viterbi_nbest(self.graph, self.transition_costs(x), n_best)

    def transduce(self, x: Instance | sp.spmatrix) -> tuple[str, ...]:
        return self.viterbi(x).labels

    def label_marginals(self, x: Instance | sp.spmatrix) -> np.ndarray:
        return self.forward_backward(x).label_marginals()

    def sequence_probability(self, x: Instance | sp.spmatrix, labels: Sequence[str] | None = None) -> float:
        """P(labels | x); labels default to the instance's own."""
        if labels is None:
            labels = x.labels if isinstance(x, Instance) else None
        if labels is None:
            raise MalformedSequenceError("No labels given and the input carries none")
        labeled = self.forward_backward(x, labels).total_cost
        unlabeled = self.forward_backward(x).total_cost
        if is_infinite(labeled):
            return 0.0
        return float(np.exp(unlabeled - labeled))

    # --- snapshot ---

    def snapshot(self) -> dict:
        """Plain, acyclic copy of topology, weights and alphabets."""
        weights = self.weights
        return {
            "input_alphabet": self.input_alphabet.entries,
            "output_alphabet": self.output_alphabet.entries,
            "states": [
                {
                    "name": state.name,
                    "initial_cost": float(self.graph.initial_costs[state.index]),
                    "final_cost": float(self.graph.final_costs[state.index]),
                    "transitions": [
                        {"destination": t.destination, "label": t.label, "weights": list(t.weight_names)}
                        for t in state.transitions
                    ],
                }
                for state in self.graph.states
            ],
            "weights": [
                {
                    "name": weights.name_of(i),
                    "default": float(weights.defaults[i]),
                    "indices": vector.indices.tolist(),
                    "values": vector.values.tolist(),
                    "frozen": bool(weights.frozen[i]),
                    "selection": None if weights.selections[i] is None else weights.selections[i].tolist(),
                }
                for i, vector in enumerate(weights.vectors)
            ],
        }

    @classmethod
    def from_snapshot(cls, snapshot: dict) -> "CRF":
        crf = cls(Alphabet(snapshot["input_alphabet"]), Alphabet(snapshot["output_alphabet"]))
        weights = crf.weights
        for entry in snapshot["weights"]:
            w = weights.index_of(entry["name"])
            weights.vectors[w] = SparseVector(entry["indices"], entry["values"])
            weights.defaults[w] = entry["default"]
            weights.frozen[w] = entry["frozen"]
            weights.selections[w] = None if entry["selection"] is None else np.asarray(entry["selection"], dtype=np.int64)
        for state in snapshot["states"]:
            crf.add_state(state["name"], state["initial_cost"], state["final_cost"])
        for state in snapshot["states"]:
            for t in state["transitions"]:
                crf.add_transition(state["name"], t["destination"], t["label"], t["weights"])
        return crf.resolve()
