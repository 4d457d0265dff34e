from collections.abc import Iterable, Mapping
from dataclasses import dataclass

import numpy as np
import scipy.sparse as sp

from py_crf.errors import MalformedSequenceError


class Alphabet:
    """Two-way mapping between hashable entries and dense integer indices."""

    def __init__(self, entries: Iterable = ()):
        self._index = {}
        self._entries = []
        self.frozen = False
        for entry in entries:
            self.lookup_index(entry)

    def lookup_index(self, entry, add: bool = True) -> int:
        """Index of `entry`, adding it unless frozen or `add` is False. Returns -1 when absent."""
        index = self._index.get(entry)
        if index is None:
            if self.frozen or not add:
                return -1
            index = len(self._entries)
            self._index[entry] = index
            self._entries.append(entry)
        return index

    def lookup_object(self, index: int):
        return self._entries[index]

    def freeze(self):
        self.frozen = True

    def unfreeze(self):
        self.frozen = False

    @property
    def entries(self) -> list:
        return list(self._entries)

    def __contains__(self, entry) -> bool:
        return entry in self._index

    def __iter__(self):
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"Alphabet({len(self)} entries{', frozen' if self.frozen else ''})"


def make_feature_sequence(
    frames: Iterable[Mapping[str, float] | Iterable[str]],
    alphabet: Alphabet,
    add: bool = True,
) -> sp.csr_matrix:
    """Build a sparse (positions x features) matrix from per-position features.

    Each frame is either a mapping from feature name to value or an iterable of
    feature names with implicit value 1. Features not in the alphabet are added,
    or dropped when `add` is False or the alphabet is frozen.
    """
    data, indices, indptr = [], [], [0]
    for frame in frames:
        items = frame.items() if isinstance(frame, Mapping) else ((name, 1.0) for name in frame)
        row = {}
        for name, value in items:
            index = alphabet.lookup_index(name, add=add)
            if index >= 0:
                row[index] = row.get(index, 0.0) + value
        for index in sorted(row):
            indices.append(index)
            data.append(row[index])
        indptr.append(len(indices))
    return sp.csr_matrix(
        (np.asarray(data, dtype=float), np.asarray(indices, dtype=np.int64), np.asarray(indptr, dtype=np.int64)),
        shape=(len(indptr) - 1, len(alphabet)),
    )


def pad_features(features: sp.csr_matrix, num_features: int) -> sp.csr_matrix:
    """View `features` with at least `num_features` columns, for alphabets that grew after it was built."""
    if features.shape[1] >= num_features:
        return features
    return sp.csr_matrix((features.data, features.indices, features.indptr), shape=(features.shape[0], num_features))


@dataclass
class Instance:
    """One input sequence with optional gold labels."""

    features: sp.csr_matrix
    labels: tuple[str, ...] | None = None
    name: str | None = None

    def __post_init__(self):
        if not sp.issparse(self.features):
            raise MalformedSequenceError(f"Features of {self.name or 'instance'} must be a sparse matrix")
        self.features = sp.csr_matrix(self.features)
        if self.labels is not None:
            self.labels = tuple(self.labels)
            if len(self.labels) != self.features.shape[0]:
                raise MalformedSequenceError(
                    f"Input has {self.features.shape[0]} positions but output has {len(self.labels)} labels"
                    + (f" in {self.name}" if self.name else "")
                )

    def __len__(self) -> int:
        return self.features.shape[0]


def make_instance(
    frames: Iterable[Mapping[str, float] | Iterable[str]],
    labels: Iterable[str] | None,
    alphabet: Alphabet,
    name: str | None = None,
    add: bool = True,
) -> Instance:
    return Instance(make_feature_sequence(frames, alphabet, add=add), None if labels is None else tuple(labels), name)
