import argparse

import regex as re
from datasets import load_dataset

from py_crf import CRF, Alphabet, make_instance, train_crf
from py_crf.evaluation import accuracy_evaluator, evaluation_report

SHAPES = [
    ("upper", re.compile(r"\p{Lu}+")),
    ("title", re.compile(r"\p{Lu}\p{Ll}+")),
    ("lower", re.compile(r"\p{Ll}+")),
    ("digit", re.compile(r"\p{N}+")),
    ("punct", re.compile(r"\p{P}+")),
]


def word_features(tokens: list[str], t: int) -> list[str]:
    word = tokens[t]
    features = [f"w={word.lower()}", f"suf3={word[-3:].lower()}"]
    features += [f"shape={name}" for name, pattern in SHAPES if pattern.fullmatch(word)]
    features.append(f"prev={tokens[t - 1].lower()}" if t > 0 else "prev=<s>")
    features.append(f"next={tokens[t + 1].lower()}" if t + 1 < len(tokens) else "next=</s>")
    return features


def load_instances(split: str, num_sentences: int, alphabet: Alphabet, add: bool):
    dataset = load_dataset("eriktks/conll2003", split=split)
    tag_names = dataset.features["ner_tags"].feature.names
    instances = []
    for item in dataset.select(range(min(num_sentences, len(dataset)))):
        tokens = item["tokens"]
        if not tokens:
            continue
        frames = [word_features(tokens, t) for t in range(len(tokens))]
        labels = [tag_names[tag] for tag in item["ner_tags"]]
        instances.append(make_instance(frames, labels, alphabet, name=item["id"], add=add))
    return instances


def main(num_train=500, num_test=200, prior="gaussian", max_iterations=100, num_workers=4):
    print("\033[1;34m📚 Loading CoNLL-2003...\033[0m")
    alphabet = Alphabet()
    train = load_instances("train", num_train, alphabet, add=True)
    alphabet.freeze()
    test = load_instances("validation", num_test, alphabet, add=False)
    print(f"  ✨ {len(train):,} training and {len(test):,} test sentences, {len(alphabet):,} features")

    crf = CRF(alphabet)
    crf.add_states_for_labels_connected_as_in(train)
    print("\n\033[1;32m🎯 Training CRF\033[0m")
    crf, result = train_crf(
        crf,
        train,
        prior=prior,
        max_iterations=max_iterations,
        num_workers=num_workers,
        evaluator=accuracy_evaluator(test),
        evaluate_every=10,
        training_proportions=(0.2, 0.5, 0.8),
        iterations_per_proportion=10,
        verbose=True,
    )
    print(f"\n\033[1;36m📊 {result.status.value} after {result.iterations} iterations\033[0m")
    print(evaluation_report(crf, test, name="validation"))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Train a CRF named-entity tagger on CoNLL-2003")
    parser.add_argument("--num-train", type=int, default=500)
    parser.add_argument("--num-test", type=int, default=200)
    parser.add_argument("--prior", choices=["gaussian", "hyperbolic", "none"], default="gaussian")
    parser.add_argument("--max-iterations", type=int, default=100)
    parser.add_argument("--num-workers", type=int, default=4)
    args = parser.parse_args()
    main(args.num_train, args.num_test, args.prior, args.max_iterations, args.num_workers)
