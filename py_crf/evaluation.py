import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass

from tabulate import tabulate

from py_crf.model import CRF
from py_crf.sequence import Instance


@dataclass
class LabelScores:
    label: str
    precision: float
    recall: float
    f1: float
    support: int


def decode_all(crf: CRF, instances: list[Instance]) -> list[tuple[str, ...]]:
    return [crf.transduce(instance) for instance in instances]


def token_accuracy(crf: CRF, instances: list[Instance], predictions=None) -> float:
    predictions = predictions if predictions is not None else decode_all(crf, instances)
    correct = total = 0
    for instance, predicted in zip(instances, predictions):
        total += len(instance.labels)
        # an empty prediction (no finite path) counts as all wrong
        correct += sum(p == g for p, g in zip(predicted, instance.labels))
    return correct / total if total else 0.0


def instance_accuracy(crf: CRF, instances: list[Instance], predictions=None) -> float:
    predictions = predictions if predictions is not None else decode_all(crf, instances)
    if not instances:
        return 0.0
    return sum(tuple(p) == tuple(i.labels) for i, p in zip(instances, predictions)) / len(instances)


def per_label_scores(crf: CRF, instances: list[Instance], predictions=None) -> list[LabelScores]:
    predictions = predictions if predictions is not None else decode_all(crf, instances)
    true_pos, predicted, gold = Counter(), Counter(), Counter()
    for instance, prediction in zip(instances, predictions):
        gold.update(instance.labels)
        predicted.update(prediction)
        true_pos.update(p for p, g in zip(prediction, instance.labels) if p == g)
    scores = []
    for label in sorted(set(gold) | set(predicted)):
        precision = true_pos[label] / predicted[label] if predicted[label] else 0.0
        recall = true_pos[label] / gold[label] if gold[label] else 0.0
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
        scores.append(LabelScores(label, precision, recall, f1, gold[label]))
    return scores


def evaluation_report(crf: CRF, instances: list[Instance], name: str = "test") -> str:
    """Accuracy summary plus a per-label precision/recall/F1 table."""
    predictions = decode_all(crf, instances)
    rows = [
        [s.label, f"{s.precision:.3f}", f"{s.recall:.3f}", f"{s.f1:.3f}", f"{s.support:,}"]
        for s in per_label_scores(crf, instances, predictions)
    ]
    header = (
        f"{name}: token accuracy {token_accuracy(crf, instances, predictions):.4f}, "
        f"instance accuracy {instance_accuracy(crf, instances, predictions):.4f}"
    )
    table = tabulate(rows, headers=["Label", "Precision", "Recall", "F1", "Support"], tablefmt="github")
    return header + "\n" + table


def accuracy_evaluator(
    instances: list[Instance],
    logger: logging.Logger | None = None,
    target: float | None = None,
) -> Callable[[CRF, int], bool]:
    """Evaluator for `train_crf` that logs token accuracy and stops once it reaches `target`."""
    logger = logger or logging.getLogger(__name__)

    def evaluate(crf: CRF, iteration: int) -> bool:
        accuracy = token_accuracy(crf, instances)
        logger.info(f"📏 Iteration {iteration}: token accuracy {accuracy:.4f} on {len(instances):,} instances")
        return target is not None and accuracy >= target

    return evaluate
