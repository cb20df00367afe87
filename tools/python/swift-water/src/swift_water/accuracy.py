"""
SWIFT — Accuracy Evaluator
===========================
Hold-out accuracy assessment of a water classifier.

Samples with ``split_key < split_ratio`` train a fresh classifier; the
rest are classified and compared with their labels.  The production
model is never touched.

Confusion matrix layout (rows = reference, columns = predicted)::

                 pred 0   pred 1
    actual 0  [[   TN  ,   FP  ],
    actual 1   [   FN  ,   TP  ]]

    overall accuracy = trace / total
    kappa            = (po - pe) / (1 - pe)
    pe               = Σ row_total * column_total / total²
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
import numpy.typing as npt
from sklearn.metrics import confusion_matrix

from shared.python.exceptions import InsufficientTrainingDataError
from shared.python.validators import Validators

from swift_water.classifier import samples_to_arrays, train
from swift_water.labels import LabeledSample

logger = logging.getLogger("swift.accuracy")

LABELS = [0, 1]


def overall_accuracy(matrix: npt.ArrayLike) -> float:
    matrix = np.asarray(matrix, dtype=np.float64)
    total = matrix.sum()
    return float(np.trace(matrix) / total) if total else 0.0


def cohen_kappa(matrix: npt.ArrayLike) -> float:
    """Cohen's kappa of a square confusion matrix.

    When chance agreement is already 1 (a single class everywhere) the
    kappa is 1.0 for perfect agreement and 0.0 otherwise.
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    total = matrix.sum()
    if total == 0:
        return 0.0
    po = np.trace(matrix) / total
    pe = float((matrix.sum(axis=1) * matrix.sum(axis=0)).sum() / total ** 2)
    if np.isclose(pe, 1.0):
        return 1.0 if np.isclose(po, 1.0) else 0.0
    return float((po - pe) / (1.0 - pe))


@dataclass(frozen=True)
class AccuracyReport:
    """Hold-out accuracy of one modality's classifier.

    Attributes:
        confusion_matrix: 2x2 counts, rows = reference, columns = predicted.
        overall_accuracy: ``trace / total``.
        kappa: Cohen's kappa.
        n_train: Training partition size.
        n_test: Test partition size.
        producers_accuracy: Per class, correct / reference total (recall).
        users_accuracy: Per class, correct / predicted total (precision).
    """

    confusion_matrix: np.ndarray
    overall_accuracy: float
    kappa: float
    n_train: int
    n_test: int
    producers_accuracy: dict[int, float | None] = field(default_factory=dict)
    users_accuracy: dict[int, float | None] = field(default_factory=dict)

    @classmethod
    def from_matrix(cls, matrix: npt.ArrayLike, n_train: int) -> "AccuracyReport":
        matrix = np.asarray(matrix, dtype=np.int64)
        diagonal = np.diag(matrix)
        rows, cols = matrix.sum(axis=1), matrix.sum(axis=0)
        return cls(
            confusion_matrix=matrix,
            overall_accuracy=overall_accuracy(matrix),
            kappa=cohen_kappa(matrix),
            n_train=n_train,
            n_test=int(matrix.sum()),
            producers_accuracy={
                label: (float(diagonal[i] / rows[i]) if rows[i] else None)
                for i, label in enumerate(LABELS)
            },
            users_accuracy={
                label: (float(diagonal[i] / cols[i]) if cols[i] else None)
                for i, label in enumerate(LABELS)
            },
        )

    def to_dict(self) -> dict:
        return {
            "confusion_matrix": self.confusion_matrix.tolist(),
            "overall_accuracy": self.overall_accuracy,
            "kappa": self.kappa,
            "n_train": self.n_train,
            "n_test": self.n_test,
            "producers_accuracy": self.producers_accuracy,
            "users_accuracy": self.users_accuracy,
        }


def split_samples(
    samples: Iterable[LabeledSample],
    split_ratio: float = 0.8,
) -> tuple[list[LabeledSample], list[LabeledSample]]:
    """Partition by split key: ``< split_ratio`` trains, the rest tests."""
    Validators.assert_fraction(split_ratio, "split_ratio")
    training: list[LabeledSample] = []
    testing: list[LabeledSample] = []
    for sample in samples:
        (training if sample.split_key < split_ratio else testing).append(sample)
    return training, testing


def evaluate_accuracy(
    samples: Iterable[LabeledSample],
    predictor_order: Sequence[str],
    split_ratio: float = 0.8,
    ensemble_size: int = 500,
    seed: int = 0,
    min_samples: int = 10,
) -> AccuracyReport:
    """Train on the training split, classify the test split, and report.

    Raises:
        InsufficientTrainingDataError: If either partition is unusable.
    """
    training, testing = split_samples(samples, split_ratio)
    if not testing:
        raise InsufficientTrainingDataError(
            f"No samples have a split key >= {split_ratio}; nothing to test on."
        )

    model = train(training, predictor_order, ensemble_size=ensemble_size, seed=seed, min_samples=min_samples)
    X_test, y_test = samples_to_arrays(testing, predictor_order)
    predicted = model.predict_array(X_test)

    report = AccuracyReport.from_matrix(
        confusion_matrix(y_test, predicted, labels=LABELS), n_train=len(training)
    )
    logger.info(
        "Accuracy (%d train / %d test): overall %.3f, kappa %.3f.",
        report.n_train, report.n_test, report.overall_accuracy, report.kappa,
    )
    return report
