import numpy as np
import scipy.sparse as sp

from py_crf.sequence import Alphabet, pad_features


class SparseVector:
    """Weights over a sorted set of feature locations."""

    def __init__(self, indices=(), values=None):
        self.indices = np.asarray(indices, dtype=np.int64)
        self.values = np.zeros(len(self.indices)) if values is None else np.asarray(values, dtype=float)
        if len(self.indices) != len(self.values):
            raise ValueError(f"{len(self.indices)} locations but {len(self.values)} values")
        if np.any(np.diff(self.indices) <= 0):
            raise ValueError("Locations must be sorted and unique")

    def __len__(self) -> int:
        return len(self.indices)

    def value(self, feature: int) -> float:
        pos = np.searchsorted(self.indices, feature)
        if pos < len(self.indices) and self.indices[pos] == feature:
            return float(self.values[pos])
        return 0.0

    def dot(self, features: sp.csr_matrix) -> np.ndarray:
        """Dot product with every row of `features`."""
        dense = np.zeros(max(features.shape[1], int(self.indices[-1]) + 1 if len(self) else 0))
        dense[self.indices] = self.values
        return features @ dense[: features.shape[1]]

    def with_locations(self, indices) -> "SparseVector":
        """Copy onto the union of current and new locations, keeping existing values."""
        merged = np.union1d(self.indices, np.asarray(indices, dtype=np.int64))
        values = np.zeros(len(merged))
        values[np.searchsorted(merged, self.indices)] = self.values
        return SparseVector(merged, values)


class WeightStore:
    """Named weight vectors over the input feature alphabet, one default (bias) weight each.

    Every mutation bumps `version`, which cached quantities compare against.
    """

    def __init__(self, input_alphabet: Alphabet):
        self.input_alphabet = input_alphabet
        self.names = Alphabet()
        self.vectors: list[SparseVector] = []
        self.defaults = np.zeros(0)
        self.frozen = np.zeros(0, dtype=bool)
        self.selections: list[np.ndarray | None] = []
        self.version = 0
        self._matrix = None

    def __len__(self) -> int:
        return len(self.vectors)

    def _bump(self):
        self.version += 1
        self._matrix = None

    def index_of(self, name: str, add: bool = True) -> int:
        index = self.names.lookup_index(name, add=add)
        if index == len(self.vectors):
            self.vectors.append(SparseVector())
            self.defaults = np.append(self.defaults, 0.0)
            self.frozen = np.append(self.frozen, False)
            self.selections.append(None)
            self._bump()
        return index

    def name_of(self, index: int) -> str:
        return self.names.lookup_object(index)

    def set_selection(self, index: int, features=None):
        """Restrict vector `index` to `features`; an empty selection leaves only the default weight."""
        self.selections[index] = None if features is None else np.unique(np.asarray(features, dtype=np.int64))
        self._bump()

    def add_locations(self, index: int, features):
        """Give vector `index` weights at `features`, filtered by its feature selection."""
        features = np.asarray(features, dtype=np.int64)
        if self.selections[index] is not None:
            features = np.intersect1d(features, self.selections[index])
        self.vectors[index] = self.vectors[index].with_locations(features)
        self._bump()

    def freeze(self, index: int):
        self.frozen[index] = True
        self._bump()

    def unfreeze(self, index: int):
        self.frozen[index] = False
        self._bump()

    # --- flat parameter view: per vector [default, values...] ---

    @property
    def offsets(self) -> np.ndarray:
        sizes = np.array([1 + len(v) for v in self.vectors], dtype=np.int64)
        return np.concatenate([[0], np.cumsum(sizes)]).astype(np.int64)

    @property
    def num_parameters(self) -> int:
        return int(sum(1 + len(v) for v in self.vectors))

    def get_parameters(self) -> np.ndarray:
        if not self.vectors:
            return np.zeros(0)
        return np.concatenate([np.concatenate([[d], v.values]) for d, v in zip(self.defaults, self.vectors)])

    def set_parameters(self, params: np.ndarray):
        offsets = self.offsets
        if len(params) != offsets[-1]:
            raise ValueError(f"Expected {offsets[-1]} weight parameters, got {len(params)}")
        for i, vector in enumerate(self.vectors):
            self.defaults[i] = params[offsets[i]]
            vector.values = np.array(params[offsets[i] + 1 : offsets[i + 1]], dtype=float)
        self._bump()

    def frozen_parameter_mask(self) -> np.ndarray:
        return np.repeat(self.frozen, np.diff(self.offsets))

    def matrix(self) -> sp.csr_matrix:
        """All vectors as a (num_vectors x num_features) sparse matrix, cached per version."""
        if self._matrix is None:
            indptr = np.concatenate([[0], np.cumsum([len(v) for v in self.vectors])]).astype(np.int64)
            indices = np.concatenate([v.indices for v in self.vectors]) if self.vectors else np.zeros(0, np.int64)
            data = np.concatenate([v.values for v in self.vectors]) if self.vectors else np.zeros(0)
            width = max(len(self.input_alphabet), int(indices.max()) + 1 if len(indices) else 0)
            self._matrix = sp.csr_matrix((data, indices, indptr), shape=(len(self.vectors), width))
        return self._matrix

    def scores(self, features: sp.csr_matrix) -> np.ndarray:
        """Per position, per vector: W_w . f_t + b_w, shape (positions, vectors)."""
        matrix = self.matrix()
        if features.shape[1] > matrix.shape[1]:
            # columns past every weight location contribute nothing
            features = features[:, : matrix.shape[1]]
        products = pad_features(features, matrix.shape[1]) @ matrix.T
        return products.toarray() + self.defaults[None, :]


class SufficientStatistics:
    """Per-parameter counts: state boundary counts plus weight counts in WeightStore parameter layout."""

    def __init__(self, num_states: int, num_weight_parameters: int):
        self.initial = np.zeros(num_states)
        self.final = np.zeros(num_states)
        self.weights = np.zeros(num_weight_parameters)

    def add(self, other: "SufficientStatistics"):
        if type(other) is not type(self):
            raise TypeError(f"Cannot add {type(other).__name__} to {type(self).__name__}")
        self.initial += other.initial
        self.final += other.final
        self.weights += other.weights
        return self

    def defaults(self, offsets: np.ndarray) -> np.ndarray:
        return self.weights[offsets[:-1]]


class Constraints(SufficientStatistics):
    """Empirical counts from label-constrained lattices."""


class Expectations(SufficientStatistics):
    """Model-expected counts from unconstrained lattices."""
