"""
Prediction model adapters for ML ops.

Usage:
    from pixelops.models import SklearnModel

    model = SklearnModel('/path/to/classifier.joblib', inference_mode='shared')
"""

from .predictors import (
    INFERENCE_MODES,
    PredictionModel,
    SklearnModel,
    TorchModel,
)

__all__ = [
    'INFERENCE_MODES',
    'PredictionModel',
    'SklearnModel',
    'TorchModel',
]
