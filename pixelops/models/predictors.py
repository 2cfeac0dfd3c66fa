"""
Prediction model adapters used by the ML ops.

A PredictionModel wraps an external engine (a scikit-learn estimator or a
torch module) behind a small interface:

    predict(array)            - class labels / regression / network output
    predict_proba(array)      - class probabilities (scikit-learn only)
    transform(array)          - feature transform (scikit-learn only)
    get_output_shape(shape)   - output shape for an input shape, or None

Engines are not assumed to be reentrant. In 'shared' mode one handle is
loaded and calls into it are serialized by a lock (reshaping and conversion
happen outside the lock). In 'thread-local' mode each thread loads its own
handle, trading memory and load time for parallelism. The mode is always
chosen explicitly (or from the 'inference_mode' config value).

Loading happens at most once per handle. If it fails, the error is stored and
re-raised as ModelLoadError on every later call, without retrying.

Usage:
    from pixelops.models import SklearnModel, TorchModel

    model = SklearnModel('/path/to/classifier.joblib')
    labels = model.predict(features)

    net = TorchModel('/path/to/unet.pt', inference_mode='thread-local')
"""

import copy
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np

from pixelops.exceptions import ConfigurationError, ModelLoadError
from pixelops.utils.config import get_config_value
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)

INFERENCE_MODES = ('shared', 'thread-local')


class PredictionModel(ABC):
    """
    Base class for engine adapters.

    Args:
        model_path: File to load the engine from (required for serialization
            and for thread-local loading of file-based engines)
        model: Already-loaded engine, used instead of model_path
        inference_mode: 'shared' or 'thread-local'; defaults to the
            'inference_mode' config value
    """

    def __init__(self, model_path: Optional[Union[str, Path]] = None, model: Any = None,
                 inference_mode: Optional[str] = None):
        if model_path is None and model is None:
            raise ConfigurationError("Either model_path or model must be provided")
        if inference_mode is None:
            inference_mode = get_config_value('inference_mode')
        if inference_mode not in INFERENCE_MODES:
            raise ConfigurationError(
                f"Unknown inference mode '{inference_mode}'. Available: {', '.join(INFERENCE_MODES)}"
            )
        self.model_path = str(model_path) if model_path is not None else None
        self.inference_mode = inference_mode

        self._template = model
        self._shared_handle = model if inference_mode == 'shared' else None
        self._local = threading.local()
        self._load_lock = threading.Lock()
        self._predict_lock = threading.Lock()
        self._load_error: Optional[ModelLoadError] = None

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @abstractmethod
    def _load(self, model_path: str) -> Any:
        """Load an engine handle from a file."""

    def _create_handle(self) -> Any:
        if self._template is not None:
            # Thread-local copies of an in-memory engine
            return copy.deepcopy(self._template)
        logger.info(f"Loading {type(self).__name__} from {self.model_path}")
        try:
            return self._load(self.model_path)
        except Exception as e:
            raise ModelLoadError(self.model_path, str(e)) from e

    def _get_handle(self) -> Any:
        if self._load_error is not None:
            raise self._load_error

        if self.inference_mode == 'thread-local':
            handle = getattr(self._local, 'handle', None)
            if handle is None:
                try:
                    handle = self._create_handle()
                except ModelLoadError as e:
                    self._load_error = e
                    raise
                self._local.handle = handle
            return handle

        if self._shared_handle is None:
            with self._load_lock:
                if self._load_error is not None:
                    raise self._load_error
                if self._shared_handle is None:
                    try:
                        self._shared_handle = self._create_handle()
                    except ModelLoadError as e:
                        self._load_error = e
                        raise
        return self._shared_handle

    def ensure_loaded(self) -> None:
        """Load the engine handle for the calling thread, if not loaded yet."""
        self._get_handle()

    # -------------------------------------------------------------------------
    # Inference
    # -------------------------------------------------------------------------

    def _to_engine_input(self, array: np.ndarray) -> Any:
        """Convert a numpy buffer to the engine's input type."""
        return array

    def _from_engine_output(self, output: Any) -> Any:
        """Convert the engine's output back to numpy."""
        return output

    @abstractmethod
    def _invoke(self, handle: Any, method: str, inputs: Any) -> Any:
        """Call the engine; runs under the predict lock in shared mode."""

    def _call(self, method: str, array: np.ndarray) -> Any:
        handle = self._get_handle()
        inputs = self._to_engine_input(array)
        if self.inference_mode == 'shared':
            with self._predict_lock:
                output = self._invoke(handle, method, inputs)
        else:
            output = self._invoke(handle, method, inputs)
        return self._from_engine_output(output)

    def predict(self, array: np.ndarray) -> Any:
        return self._call('predict', array)

    def predict_proba(self, array: np.ndarray) -> np.ndarray:
        raise NotImplementedError(f"{type(self).__name__} does not provide probabilities")

    def transform(self, array: np.ndarray) -> np.ndarray:
        raise NotImplementedError(f"{type(self).__name__} does not provide a feature transform")

    def get_output_shape(self, input_shape: Sequence[int], method: str = 'predict') -> Optional[Tuple[int, ...]]:
        """
        Output shape for an input shape, or None if the engine cannot say
        without running a prediction.
        """
        return None

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    def get_config(self) -> Dict[str, Any]:
        return {'model_path': self.model_path, 'inference_mode': self.inference_mode}

    def __eq__(self, other):
        if self is other:
            return True
        if type(self) is not type(other):
            return NotImplemented
        # In-memory engines have no stable identity beyond the object
        if self.model_path is None or other.model_path is None:
            return False
        return self.get_config() == other.get_config()

    def __hash__(self):
        return hash((type(self), self.model_path))

    def __repr__(self):
        source = self.model_path if self.model_path is not None else type(self._template).__name__
        return f"{type(self).__name__}({source!r}, inference_mode={self.inference_mode!r})"


# =============================================================================
# SCIKIT-LEARN
# =============================================================================

class SklearnModel(PredictionModel):
    """
    scikit-learn estimator or transformer, loaded with joblib.

    Inputs are (n_samples, n_features) float32 arrays; outputs are 2-D
    (a 1-D prediction becomes a single column).
    """

    def _load(self, model_path: str) -> Any:
        import joblib

        model = joblib.load(model_path)
        # Classifiers saved by training scripts are often wrapped in a dict
        if isinstance(model, dict) and 'model' in model:
            model = model['model']
        return model

    def _invoke(self, handle: Any, method: str, array: np.ndarray) -> np.ndarray:
        fn = getattr(handle, method, None)
        if fn is None:
            raise NotImplementedError(f"{type(handle).__name__} has no method '{method}'")
        return fn(array)

    def _call(self, method: str, array: np.ndarray) -> np.ndarray:
        output = np.asarray(super()._call(method, array))
        if output.ndim == 1:
            output = output.reshape(-1, 1)
        return output

    def predict_proba(self, array: np.ndarray) -> np.ndarray:
        return self._call('predict_proba', array)

    def transform(self, array: np.ndarray) -> np.ndarray:
        return self._call('transform', array)

    def get_output_shape(self, input_shape: Sequence[int], method: str = 'predict') -> Optional[Tuple[int, ...]]:
        handle = self._get_handle()
        n_samples = input_shape[0]
        if method == 'predict_proba' and hasattr(handle, 'classes_'):
            return n_samples, len(handle.classes_)
        if method == 'predict' and getattr(handle, 'n_outputs_', 1) == 1:
            return n_samples, 1
        if method == 'transform':
            if hasattr(handle, 'n_components_'):
                return n_samples, int(handle.n_components_)
            if hasattr(handle, 'scale_') or hasattr(handle, 'mean_'):
                return tuple(input_shape)
        return None


# =============================================================================
# TORCH
# =============================================================================

class TorchModel(PredictionModel):
    """
    torch module taking NCHW float32 input.

    Files are loaded with torch.jit.load (TorchScript) or, failing that,
    torch.load for pickled modules. Outputs may be a tensor, a tuple/list of
    tensors (named 'output0', 'output1', ...) or a dict of tensors; multiple
    outputs are returned as a dict of numpy arrays.
    """

    def __init__(self, model_path: Optional[Union[str, Path]] = None, model: Any = None,
                 inference_mode: Optional[str] = None, device: str = 'cpu'):
        super().__init__(model_path, model, inference_mode)
        self.device = device
        if self._shared_handle is not None:
            self._shared_handle.eval()

    def _load(self, model_path: str) -> Any:
        import torch

        try:
            module = torch.jit.load(model_path, map_location=self.device)
        except RuntimeError:
            logger.debug(f"{model_path} is not TorchScript, loading as a pickled module")
            module = torch.load(model_path, map_location=self.device, weights_only=False)
        module.eval()
        return module.to(self.device)

    def _to_engine_input(self, array: np.ndarray) -> Any:
        import torch

        return torch.from_numpy(np.ascontiguousarray(array, dtype=np.float32)).to(self.device)

    def _invoke(self, handle: Any, method: str, inputs: Any) -> Any:
        import torch

        if method != 'predict':
            raise NotImplementedError(f"TorchModel does not support '{method}'")
        with torch.no_grad():
            return handle(inputs)

    def _from_engine_output(self, output: Any) -> Any:
        if isinstance(output, dict):
            return {str(k): v.detach().cpu().numpy() for k, v in output.items()}
        if isinstance(output, (tuple, list)):
            return {f"output{i}": v.detach().cpu().numpy() for i, v in enumerate(output)}
        return output.detach().cpu().numpy()

    def get_config(self) -> Dict[str, Any]:
        config = super().get_config()
        config['device'] = self.device
        return config
