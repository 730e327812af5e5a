"""
MLP risk regressor.

Wraps scikit-learn's MLPRegressor on the 11-feature property vector.
Targets are risk scores on 0-100, trained on a 0-1 scale. Fitted models
are persisted with joblib as bytes so any store can hold them.
"""

import io
import logging
import warnings
from typing import List, Optional, Sequence

import joblib
import numpy as np
from sklearn.exceptions import ConvergenceWarning
from sklearn.neural_network import MLPRegressor

from ..schemas import Hyperparameters
from .scoring import FEATURE_NAMES

logger = logging.getLogger(__name__)

# A held-out prediction counts as correct when within this many points.
BENCHMARK_TOLERANCE = 15.0


class RiskModel:
    """Trainable ML component of the risk ensemble."""

    def __init__(self, hyperparameters: Optional[Hyperparameters] = None, random_state: int = 42):
        self.hyperparameters = hyperparameters or Hyperparameters()
        self.random_state = random_state
        self.model: Optional[MLPRegressor] = None
        self.feature_names = list(FEATURE_NAMES)

    @property
    def is_fitted(self) -> bool:
        return self.model is not None

    def fit(self, X: Sequence[Sequence[float]], y: Sequence[float]) -> "RiskModel":
        """
        Train on feature rows and 0-100 targets.

        Args:
            X: Feature vectors, one per sample
            y: Target risk scores

        Returns:
            self
        """
        X_arr = self._as_matrix(X)
        y_arr = np.clip(np.asarray(y, dtype=float), 0.0, 100.0) / 100.0
        hp = self.hyperparameters

        model = MLPRegressor(
            hidden_layer_sizes=tuple(hp.hidden_layers),
            learning_rate_init=hp.learning_rate,
            max_iter=hp.epochs,
            batch_size=min(hp.batch_size, len(X_arr)),
            random_state=self.random_state,
        )
        with warnings.catch_warnings():
            # Small feedback sets rarely converge within the epoch budget.
            warnings.simplefilter("ignore", category=ConvergenceWarning)
            model.fit(X_arr, y_arr)

        self.model = model
        logger.info(f"Fitted risk MLP on {len(X_arr)} samples ({hp.epochs} epochs)")
        return self

    def predict(self, X: Sequence[Sequence[float]]) -> List[float]:
        """Predicted risk scores on 0-100."""
        if not self.is_fitted:
            raise RuntimeError("Model not fitted")
        raw = self.model.predict(self._as_matrix(X))
        return [float(v) for v in np.clip(np.atleast_1d(raw) * 100.0, 0.0, 100.0)]

    def predict_one(self, features: Sequence[float]) -> float:
        return self.predict([features])[0]

    def benchmark(self, X: Sequence[Sequence[float]], y: Sequence[float]) -> float:
        """Percentage of predictions within BENCHMARK_TOLERANCE points of the target."""
        if len(y) == 0:
            return 0.0
        predictions = np.asarray(self.predict(X))
        hits = np.abs(predictions - np.asarray(y, dtype=float)) < BENCHMARK_TOLERANCE
        return round(float(hits.mean()) * 100.0, 2)

    def _as_matrix(self, X: Sequence[Sequence[float]]) -> np.ndarray:
        X_arr = np.asarray(X, dtype=float)
        if X_arr.ndim != 2 or X_arr.shape[1] != len(self.feature_names):
            raise ValueError(
                f"Expected feature rows of length {len(self.feature_names)}, got shape {X_arr.shape}"
            )
        return X_arr

    def to_bytes(self) -> bytes:
        if not self.is_fitted:
            raise RuntimeError("Model not fitted. Cannot save unfitted model.")
        buffer = io.BytesIO()
        joblib.dump(
            {
                "model": self.model,
                "feature_names": self.feature_names,
                "hyperparameters": self.hyperparameters.model_dump(),
            },
            buffer,
        )
        return buffer.getvalue()

    @classmethod
    def from_bytes(cls, payload: bytes) -> "RiskModel":
        data = joblib.load(io.BytesIO(payload))
        instance = cls(Hyperparameters(**data["hyperparameters"]))
        instance.model = data["model"]
        instance.feature_names = data["feature_names"]
        return instance
