"""Property risk scoring, ensemble prediction and model training."""

from .ensemble import BulkPredictionResult, RiskEnsemble, ml_confidence
from .model import RiskModel
from .scoring import FEATURE_NAMES, StatisticalResult, StatisticalScorer, predicted_breach_date
from .training import TrainingResult, TrainingService

__all__ = [
    "BulkPredictionResult",
    "FEATURE_NAMES",
    "RiskEnsemble",
    "RiskModel",
    "StatisticalResult",
    "StatisticalScorer",
    "TrainingResult",
    "TrainingService",
    "ml_confidence",
    "predicted_breach_date",
]
