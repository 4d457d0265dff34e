import json

import numpy as np
import pytest

from py_crf.costs import INFINITE_COST, is_infinite
from py_crf.errors import ConfigError, MalformedSequenceError
from py_crf.model import CRF
from py_crf.sequence import Alphabet, Instance, make_feature_sequence, make_instance
from py_crf.weights import SparseVector

# --- Fixtures ---


@pytest.fixture
def tagging_instances():
    alphabet = Alphabet()
    instances = [
        make_instance([["the"], ["dog"], ["runs"]], ["DET", "NOUN", "VERB"], alphabet, name="s1"),
        make_instance([["a"], ["cat"], ["sleeps"]], ["DET", "NOUN", "VERB"], alphabet, name="s2"),
        make_instance([["dogs"], ["run"]], ["NOUN", "VERB"], alphabet, name="s3"),
    ]
    return alphabet, instances


@pytest.fixture
def tagging_crf(tagging_instances):
    alphabet, instances = tagging_instances
    crf = CRF(alphabet)
    crf.add_states_for_labels_connected_as_in(instances)
    # no bigram leads into DET, so sentences enter through the start state
    crf.add_start_state()
    return crf.resolve()


# --- Sequences and alphabets ---


def test_alphabet_lookup_and_freeze():
    alphabet = Alphabet(["a", "b"])
    assert alphabet.lookup_index("b") == 1
    assert alphabet.lookup_index("c") == 2
    alphabet.freeze()
    assert alphabet.lookup_index("d") == -1
    assert alphabet.lookup_object(2) == "c"
    assert len(alphabet) == 3 and "d" not in alphabet


def test_feature_sequence_from_mappings_and_names():
    alphabet = Alphabet()
    features = make_feature_sequence([{"x": 2.0, "y": 1.0}, ["y", "y"]], alphabet)
    assert features.shape == (2, 2)
    assert features.toarray().tolist() == [[2.0, 1.0], [0.0, 2.0]]
    dropped = make_feature_sequence([["z"]], alphabet, add=False)
    assert dropped.nnz == 0


def test_instance_length_mismatch_is_malformed():
    features = make_feature_sequence([["x"], ["y"]], Alphabet())
    with pytest.raises(MalformedSequenceError):
        Instance(features, ("A",))
    # also a ValueError for callers that only know about builtins
    with pytest.raises(ValueError):
        Instance(features, ("A", "B", "C"))


def test_sparse_vector_locations_keep_values():
    vector = SparseVector([1, 4], [0.5, -1.0])
    widened = vector.with_locations([0, 4, 7])
    assert widened.indices.tolist() == [0, 1, 4, 7]
    assert widened.value(1) == 0.5 and widened.value(4) == -1.0 and widened.value(7) == 0.0
    features = make_feature_sequence([{"a": 1.0}], Alphabet(["a", "b"]))
    assert vector.dot(features).tolist() == [0.0]


# --- Graph construction ---


def test_unresolved_destination_is_config_error():
    crf = CRF()
    crf.add_state("A")
    crf.add_transition("A", "B", "b", ["w"])
    with pytest.raises(ConfigError):
        crf.resolve()


def test_duplicate_state_is_config_error():
    crf = CRF()
    crf.add_state("A")
    with pytest.raises(ConfigError):
        crf.add_state("A")


def test_graph_must_be_resolved_before_use():
    crf = CRF()
    crf.add_fully_connected_states(["A", "B"])
    features = make_feature_sequence([["x"]], crf.input_alphabet)
    with pytest.raises(ConfigError):
        crf.viterbi(features)
    crf.resolve()
    crf.viterbi(features)
    crf.add_state("C")
    with pytest.raises(ConfigError):
        crf.forward_backward(features)


def test_transition_table_slices(tagging_crf):
    graph = tagging_crf.graph
    det = graph.state("DET").index
    outgoing = graph.transitions_from(det)
    assert [t.destination for t in outgoing] == ["NOUN"]
    assert all(t.source == det for t in outgoing)
    assert graph.offsets[-1] == len(graph.transitions)
    # connected as in training data only, plus the start state into every label
    pairs = {(graph.states[t.source].name, t.destination) for t in graph.transitions}
    assert pairs == {("DET", "NOUN"), ("NOUN", "VERB")} | {("<START>", label) for label in ["DET", "NOUN", "VERB"]}


def test_costs_from_blocks_other_labels():
    crf = CRF()
    crf.add_fully_connected_states(["A", "B"])
    crf.resolve()
    crf.weights.set_parameters(np.arange(1.0, 1.0 + crf.weights.num_parameters))
    frames = make_feature_sequence([["x"], ["y"]], crf.input_alphabet)
    state = crf.graph.state("A").index
    free = crf.graph.costs_from(state, frames[0])
    assert free.tolist() == [-1.0, -2.0]
    constrained = crf.graph.costs_from(state, frames[0], "B")
    assert is_infinite(constrained[0]) and constrained[1] == -2.0
    with pytest.raises(MalformedSequenceError):
        crf.graph.costs_from(state, frames)


def test_unknown_constraint_label_is_malformed(tagging_crf, tagging_instances):
    _, instances = tagging_instances
    with pytest.raises(MalformedSequenceError):
        tagging_crf.forward_backward(instances[0], ["DET", "ADJ", "VERB"])
    with pytest.raises(MalformedSequenceError):
        tagging_crf.forward_backward(instances[0], ["DET", "NOUN"])


def test_start_state_blocks_other_entries():
    crf = CRF()
    crf.add_fully_connected_states(["A", "B"])
    start = crf.add_start_state()
    crf.resolve()
    graph = crf.graph
    assert all(is_infinite(graph.initial_costs[:2]))
    assert graph.initial_costs[start.index] == 0.0
    assert is_infinite(graph.final_costs[start.index])
    path = crf.viterbi(make_feature_sequence([["x"], ["y"]], crf.input_alphabet))
    assert path.states[0] == "<START>"
    crf.set_as_start_state("B")
    assert graph.initial_costs.tolist() == [INFINITE_COST, 0.0, INFINITE_COST]


# --- Order-N topologies ---


def test_order_zero_states_are_labels(tagging_instances):
    alphabet, instances = tagging_instances
    crf = CRF(alphabet)
    crf.add_order_n_states(instances, orders=(0,))
    crf.resolve()
    assert [s.name for s in crf.graph.states] == ["DET", "NOUN", "VERB"]
    assert len(crf.graph.transitions) == 9


def test_order_one_with_forbidden_pairs(tagging_instances):
    alphabet, instances = tagging_instances
    crf = CRF(alphabet)
    crf.add_order_n_states(instances, orders=(1,), forbidden=r"DET,VERB|VERB,DET")
    crf.resolve()
    pairs = {(crf.graph.states[t.source].name, t.destination) for t in crf.graph.transitions}
    assert ("DET", "VERB") not in pairs and ("VERB", "DET") not in pairs
    assert ("DET", "NOUN") in pairs
    assert crf.graph.transitions_from(0)[0].weight_names == ("DET,DET",)


def test_order_two_histories_and_default_only_weights(tagging_instances):
    alphabet, instances = tagging_instances
    crf = CRF(alphabet)
    start = crf.add_order_n_states(instances, orders=(1, 2), defaults=(True, False), start="DET", fully_connected=False)
    crf.resolve()
    assert start == "DET,DET"
    state = crf.graph.state("DET,NOUN")
    transition = state.transitions[0]
    assert transition.destination == "NOUN,VERB"
    assert transition.weight_names == ("NOUN,VERB", "DET,NOUN,VERB")
    assert crf.weights.selections[crf.weights.index_of("NOUN,VERB")].size == 0
    # seen bigrams only, except from the start label
    assert {t.label for t in crf.graph.state("NOUN,NOUN").transitions} == {"VERB"}
    assert {t.label for t in crf.graph.state("DET,DET").transitions} == {"DET", "NOUN", "VERB"}

    crf.set_weights_dimension_as_in(instances)
    assert len(crf.weights.vectors[crf.weights.index_of("NOUN,VERB")]) == 0
    assert len(crf.weights.vectors[crf.weights.index_of("DET,NOUN,VERB")]) > 0


@pytest.mark.parametrize(
    "orders, defaults",
    [((2, 1), None), ((-1,), None), ((1, 1), None), ((1, 2), (True,))],
)
def test_order_n_rejects_bad_orders(tagging_instances, orders, defaults):
    alphabet, instances = tagging_instances
    crf = CRF(alphabet)
    with pytest.raises(ConfigError):
        crf.add_order_n_states(instances, orders=orders, defaults=defaults)


# --- Weights ---


def test_sparse_dimensioning_uses_gold_transitions(tagging_crf, tagging_instances):
    alphabet, instances = tagging_instances
    tagging_crf.set_weights_dimension_as_in(instances)
    weights = tagging_crf.weights

    def features_of(name):
        return {alphabet.lookup_object(i) for i in weights.vectors[weights.index_of(name)].indices}

    # every sentence is feasible, so each contributes its frames
    assert features_of("DET->NOUN:NOUN") == {"dog", "cat"}
    assert features_of("<START>->NOUN:NOUN") == {"dogs"}
    assert features_of("<START>->DET:DET") == {"the", "a"}
    assert features_of("NOUN->VERB:VERB") == {"runs", "sleeps", "run"}


def test_dense_dimensioning_respects_selection(tagging_crf):
    weights = tagging_crf.weights
    weights.set_selection(0, [1, 2])
    tagging_crf.set_weights_dimension_densely()
    assert weights.vectors[0].indices.tolist() == [1, 2]
    assert len(weights.vectors[1]) == len(tagging_crf.input_alphabet)


def test_weight_version_tracks_changes(tagging_crf):
    version = tagging_crf.version
    tagging_crf.freeze_weights("DET->NOUN:NOUN")
    assert tagging_crf.version != version
    version = tagging_crf.version
    tagging_crf.graph.set_final_cost("VERB", -1.0)
    assert tagging_crf.version[1] > version[1]


def test_labels_emitted_by_no_transition(tagging_crf):
    alphabet = tagging_crf.input_alphabet
    extra = make_instance([["the"], ["big"]], ["DET", "ADJ"], alphabet)
    with pytest.raises(ConfigError):
        tagging_crf.check_labels([extra])


# --- Snapshot ---


def test_snapshot_round_trip(tagging_crf, tagging_instances):
    _, instances = tagging_instances
    tagging_crf.set_weights_dimension_as_in(instances)
    rng = np.random.default_rng(3)
    tagging_crf.weights.set_parameters(rng.normal(size=tagging_crf.weights.num_parameters))
    tagging_crf.freeze_weights("NOUN->VERB:VERB")

    snapshot = tagging_crf.snapshot()
    restored = CRF.from_snapshot(json.loads(json.dumps(snapshot)))
    assert restored.snapshot() == snapshot
    for instance in instances:
        np.testing.assert_array_equal(restored.transition_costs(instance), tagging_crf.transition_costs(instance))
        assert restored.viterbi(instance) == tagging_crf.viterbi(instance)
    assert restored.weights.frozen.tolist() == tagging_crf.weights.frozen.tolist()


def test_freezing_unknown_weights_is_config_error(tagging_crf):
    with pytest.raises(ConfigError):
        tagging_crf.freeze_weights("NOUN->DET:DET")


def test_costs_from_matches_transition_costs(tagging_crf, tagging_instances):
    _, instances = tagging_instances
    tagging_crf.set_weights_dimension_densely()
    rng = np.random.default_rng(4)
    tagging_crf.weights.set_parameters(rng.normal(size=tagging_crf.weights.num_parameters))
    graph = tagging_crf.graph
    costs = tagging_crf.transition_costs(instances[0])
    for t in range(len(instances[0])):
        for state in range(len(graph)):
            row = graph.costs_from(state, instances[0].features[t])
            np.testing.assert_allclose(row, costs[t, graph.offsets[state] : graph.offsets[state + 1]])


def test_bi_label_states_follow_seen_bigrams():
    alphabet = Alphabet()
    instances = [
        make_instance([["x"], ["y"], ["x"], ["y"]], ["A", "B", "A", "B"], alphabet),
        make_instance([["y"], ["y"]], ["B", "B"], alphabet),
    ]
    crf = CRF(alphabet)
    crf.add_states_for_bi_labels_connected_as_in(instances)
    crf.resolve()
    graph = crf.graph
    assert sorted(s.name for s in graph.states) == ["A,B", "B,A", "B,B"]
    assert {(t.destination, t.label) for t in graph.state("A,B").transitions} == {("B,A", "A"), ("B,B", "B")}
    assert [(t.destination, t.label) for t in graph.state("B,A").transitions] == [("A,B", "B")]
    assert graph.state("A,B").transitions[0].weight_names == ("A,B->B,A:A",)
    assert crf.forward_backward(instances[0], instances[0].labels).feasible
    assert not crf.forward_backward(instances[1], ["A", "A"]).feasible


def test_sequence_probability_needs_labels(tagging_crf, tagging_instances):
    _, instances = tagging_instances
    assert 0.0 < tagging_crf.sequence_probability(instances[0]) <= 1.0
    with pytest.raises(MalformedSequenceError):
        tagging_crf.sequence_probability(instances[0].features)


def test_weight_vectors_reject_bad_input(tagging_crf):
    with pytest.raises(ValueError):
        SparseVector([3, 1], [0.0, 0.0])
    with pytest.raises(ValueError):
        SparseVector([1, 2], [0.0])
    with pytest.raises(ValueError):
        tagging_crf.weights.set_parameters(np.zeros(tagging_crf.weights.num_parameters + 1))
