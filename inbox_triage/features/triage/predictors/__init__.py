from inbox_triage.features.triage.predictors.ensemble import EnsemblePredictor, combine_predictions
from inbox_triage.features.triage.predictors.statistical import StatisticalPredictor

__all__ = ["EnsemblePredictor", "StatisticalPredictor", "combine_predictions"]
