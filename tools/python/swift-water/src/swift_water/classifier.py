"""
SWIFT — Classifier Trainer/Predictor
=====================================
Binary water / non-water classification with a bagged ensemble of
decision trees (scikit-learn ``RandomForestClassifier``).

One :class:`WaterClassifier` is trained per modality (optical, radar).
It is bound to the ordered predictor names it was trained on: any
feature vector or feature image whose predictor names differ in order,
length, or spelling is rejected with :class:`ClassifierSchemaError`.

Usage::

    model = train(samples, OPTICAL_PREDICTORS, ensemble_size=500, seed=0)
    label = model.predict(vector)
    classified = model.classify_image(feature_image)   # band "classification"
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

import numpy as np
import numpy.typing as npt
from sklearn.ensemble import RandomForestClassifier

from shared.python.exceptions import (
    ClassifierSchemaError,
    InsufficientTrainingDataError,
)
from shared.python.validators import Validators

from swift_water.labels import FeatureVector, LabeledSample
from swift_water.raster import RasterImage

logger = logging.getLogger("swift.classifier")

CLASSIFICATION_BAND = "classification"

# Rows per predict() call when classifying an image.
_PREDICT_CHUNK = 1_000_000


class WaterClassifier:
    """A fitted water classifier bound to one predictor schema.

    Instances are produced by :func:`train`; there is no way to refit one.

    Args:
        model: A fitted ``RandomForestClassifier`` over labels ``{0, 1}``.
        predictor_order: Predictor names, in the column order used for fitting.
    """

    def __init__(self, model: RandomForestClassifier, predictor_order: Sequence[str]) -> None:
        self._model = model
        self._predictors: tuple[str, ...] = tuple(predictor_order)
        # Column of predict_proba() holding the water vote fraction.
        self._water_column = int(np.flatnonzero(model.classes_ == 1)[0])

    @property
    def predictor_order(self) -> tuple[str, ...]:
        return self._predictors

    @property
    def ensemble_size(self) -> int:
        return len(self._model.estimators_)

    def check_schema(self, names: Sequence[str]) -> None:
        """Raise :class:`ClassifierSchemaError` unless *names* equals the schema."""
        if tuple(names) != self._predictors:
            raise ClassifierSchemaError(self._predictors, names)

    # ------------------------------------------------------------------
    # Point prediction
    # ------------------------------------------------------------------

    def _row(self, vector: FeatureVector) -> npt.NDArray[np.float64] | None:
        self.check_schema(vector.names)
        if not vector.is_complete:
            return None
        return np.asarray(vector.values, dtype=np.float64).reshape(1, -1)

    def predict(self, vector: FeatureVector) -> int | None:
        """Return ``1`` (water) or ``0``; ``None`` if any predictor is no data."""
        row = self._row(vector)
        if row is None:
            return None
        return int(self._model.predict(row)[0])

    def predict_fraction(self, vector: FeatureVector) -> float | None:
        """Fraction of trees voting water, before thresholding."""
        row = self._row(vector)
        if row is None:
            return None
        return float(self._model.predict_proba(row)[0, self._water_column])

    def predict_array(self, features: npt.ArrayLike) -> npt.NDArray[np.uint8]:
        """Classify an ``(n, k)`` matrix whose columns follow the schema."""
        matrix = np.asarray(features, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] != len(self._predictors):
            columns = matrix.shape[1] if matrix.ndim == 2 else 0
            raise ClassifierSchemaError(self._predictors, [f"column{i}" for i in range(columns)])
        if matrix.shape[0] == 0:
            return np.zeros(0, dtype=np.uint8)
        return self._model.predict(matrix).astype(np.uint8)

    # ------------------------------------------------------------------
    # Image prediction
    # ------------------------------------------------------------------

    def classify_image(self, features: RasterImage) -> RasterImage:
        """Classify every pixel of a feature image.

        Returns:
            An image with the single band ``classification`` holding 0/1,
            masked wherever any predictor is masked.  Timestamp, source,
            and properties are carried over.

        Raises:
            ClassifierSchemaError: If the image bands differ from the schema.
        """
        self.check_schema(features.band_names)
        valid = features.valid_mask()
        stack = np.column_stack([features.bands[name].data[valid] for name in self._predictors])

        labels = np.zeros(stack.shape[0], dtype=np.uint8)
        for start in range(0, stack.shape[0], _PREDICT_CHUNK):
            labels[start:start + _PREDICT_CHUNK] = self.predict_array(
                stack[start:start + _PREDICT_CHUNK]
            )

        out = np.zeros(features.grid.shape, dtype=np.float64)
        out[valid] = labels
        logger.debug(
            "Classified %s: %d valid pixel(s), %d water.",
            features, int(valid.sum()), int(labels.sum()),
        )
        return features.with_bands(
            {CLASSIFICATION_BAND: np.ma.MaskedArray(out, mask=~valid)}, replace=True
        )

    def __repr__(self) -> str:
        return f"<WaterClassifier trees={self.ensemble_size} predictors={list(self._predictors)}>"


# ---------------------------------------------------------------------------
# Training
# ---------------------------------------------------------------------------


def samples_to_arrays(
    samples: Iterable[LabeledSample],
    predictor_order: Sequence[str],
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.int64]]:
    """Stack samples into ``(X, y)`` after checking each sample's schema."""
    expected = tuple(predictor_order)
    rows: list[tuple[float | None, ...]] = []
    labels: list[int] = []
    for sample in samples:
        if sample.features.names != expected:
            raise ClassifierSchemaError(expected, sample.features.names)
        rows.append(sample.features.values)
        labels.append(sample.label)
    X = np.asarray(rows, dtype=np.float64).reshape(len(rows), len(expected))
    return X, np.asarray(labels, dtype=np.int64)


def train(
    samples: Iterable[LabeledSample],
    predictor_order: Sequence[str],
    ensemble_size: int = 500,
    seed: int = 0,
    min_samples: int = 10,
) -> WaterClassifier:
    """Fit a random forest on labeled samples.

    Args:
        samples: Sampled feature vectors with labels.
        predictor_order: Column order of the classifier schema.
        ensemble_size: Number of trees.
        seed: Random state for bootstrap sampling and feature selection.
        min_samples: Smallest acceptable training set.

    Raises:
        InsufficientTrainingDataError: Fewer than *min_samples* samples, or
            one class has no samples.
        ClassifierSchemaError: A sample's predictor names differ from
            *predictor_order*.
    """
    Validators.assert_positive(ensemble_size, "ensemble_size")
    X, y = samples_to_arrays(samples, predictor_order)

    if len(y) < min_samples:
        raise InsufficientTrainingDataError(
            f"Need at least {min_samples} training samples, got {len(y)}."
        )
    counts = {label: int((y == label).sum()) for label in (0, 1)}
    empty = [label for label, count in counts.items() if count == 0]
    if empty:
        raise InsufficientTrainingDataError(
            f"Training data has no samples for class {empty[0]} (counts: {counts})."
        )
    if np.isnan(X).any():
        raise InsufficientTrainingDataError("Training samples contain no-data predictor values.")

    model = RandomForestClassifier(
        n_estimators=int(ensemble_size),
        bootstrap=True,
        random_state=seed,
    )
    model.fit(X, y)
    logger.info(
        "Trained %d-tree classifier on %d sample(s) %s with predictors %s.",
        ensemble_size, len(y), counts, list(predictor_order),
    )
    return WaterClassifier(model, predictor_order)
