"""
Machine learning ops wrapping a PredictionModel.

- StatModelOp: per-pixel classifier/regressor on the channel values
- DnnOp: network applied to the whole (padded) tile, re-tiled when the
  network requires a fixed input size
- FeaturePreprocessorOp: per-pixel feature transform (scaling, PCA)

When the model cannot report its output shape, the output channels are found
by running one zero-filled input through the op. The result is cached per
input channel count.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

import cv2
import numpy as np

from pixelops.ops.base import (
    ImageChannel,
    ImageOp,
    Padding,
    PaddedOp,
    PixelType,
    get_channel_list,
    get_default_channel_list,
)
from pixelops.ops.opencv_tools import apply_tiled, ensure_3d, merge_channels
from pixelops.models.predictors import PredictionModel
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)

WHITE = 0xffffff

# Spatial size of the zero-filled input used to discover output channels
_SAMPLE_SIZE = 32


class _CachedChannelsMixin:
    """
    Cache output channels per input channel count, computed under the op lock.

    The model is loaded before the lock is taken, so file I/O never runs
    while the op lock is held.
    """

    def _cached_channels(self, n_channels: int, factory) -> List[ImageChannel]:
        cache = self._channel_cache
        channels = cache.get(n_channels)
        if channels is None:
            self.model.ensure_loaded()
            with self._lock:
                channels = cache.get(n_channels)
                if channels is None:
                    channels = factory()
                    cache[n_channels] = channels
        return list(channels)


class StatModelOp(_CachedChannelsMixin, ImageOp):
    """
    Apply a model to each pixel: (h, w, c) -> (h * w, c) -> predict -> (h, w, k).

    Output is float32.
    """

    def __init__(self, model: PredictionModel, request_probabilities: bool = False):
        super().__init__()
        self.model = model
        self.request_probabilities = bool(request_probabilities)
        self._channel_cache: Dict[int, List[ImageChannel]] = {}

    def _method(self) -> str:
        return 'predict_proba' if self.request_probabilities else 'predict'

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        h, w, c = mat.shape
        samples = mat.reshape(h * w, c).astype(np.float32, copy=False)
        if self.request_probabilities:
            output = self.model.predict_proba(samples)
        else:
            output = self.model.predict(samples)
        output = np.asarray(output, dtype=np.float32)
        return output.reshape(h, w, -1)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        def factory():
            shape = self.model.get_output_shape((1, len(channels)), self._method())
            if shape is not None:
                return get_default_channel_list(shape[-1])
            sample = np.zeros((1, 1, len(channels)), dtype=np.float32)
            return get_default_channel_list(self.apply(sample).shape[2])
        return self._cached_channels(len(channels), factory)

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return PixelType.FLOAT32

    def get_config(self) -> Dict[str, Any]:
        return {'model': self.model, 'request_probabilities': self.request_probabilities}


class FeaturePreprocessorOp(_CachedChannelsMixin, ImageOp):
    """Per-pixel feature transform; channels become 'Feature i' when the dimension changes."""

    def __init__(self, model: PredictionModel):
        super().__init__()
        self.model = model
        self._channel_cache: Dict[int, List[ImageChannel]] = {}

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        h, w, c = mat.shape
        samples = mat.reshape(h * w, c).astype(np.float32, copy=False)
        output = np.asarray(self.model.transform(samples), dtype=np.float32)
        return output.reshape(h, w, -1)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        def factory():
            shape = self.model.get_output_shape((1, len(channels)), 'transform')
            if shape is None:
                sample = np.zeros((1, 1, len(channels)), dtype=np.float32)
                n_outputs = self.apply(sample).shape[2]
            else:
                n_outputs = shape[-1]
            if n_outputs == len(channels):
                return list(channels)
            return [ImageChannel(f"Feature {i}", WHITE) for i in range(n_outputs)]
        return self._cached_channels(len(channels), factory)

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return PixelType.FLOAT32

    def get_config(self) -> Dict[str, Any]:
        return {'model': self.model}


class DnnOp(_CachedChannelsMixin, PaddedOp):
    """
    Apply a network to the whole tile.

    Args:
        model: Model taking a (1, C, H, W) float32 array
        input_width: Fixed network input width, or <= 0 for any size
        input_height: Fixed network input height, or <= 0 for any size
        padding: Padding to request around each tile (stripped from the output)
        output_names: Outputs to keep (in order) when the model returns several
    """

    def __init__(self, model: PredictionModel, input_width: int = -1, input_height: int = -1,
                 padding: Optional[Union[Padding, Dict[str, int]]] = None,
                 output_names: Sequence[str] = ()):
        super().__init__()
        self.model = model
        self.input_width = int(input_width)
        self.input_height = int(input_height)
        if isinstance(padding, dict) or padding is None:
            padding = Padding.from_dict(padding)
        self.padding = padding
        self.output_names = [str(n) for n in output_names]
        self._channel_cache: Dict[int, List[ImageChannel]] = {}

    def calculate_padding(self) -> Padding:
        return self.padding

    def _predict(self, mat: np.ndarray) -> np.ndarray:
        h, w = mat.shape[:2]
        blob = np.ascontiguousarray(mat.transpose(2, 0, 1)[np.newaxis], dtype=np.float32)
        output = self.model.predict(blob)
        output = self._select_outputs(output)
        planes = []
        for array in output:
            array = np.asarray(array, dtype=np.float32)
            if array.ndim == 4:
                array = array[0]
            if array.ndim == 2:
                array = array[np.newaxis]
            planes.extend(array[c] for c in range(array.shape[0]))
        if planes and planes[0].shape != (h, w):
            logger.debug(f"Resizing network output {planes[0].shape} to {(h, w)}")
            planes = [cv2.resize(p, (w, h), interpolation=cv2.INTER_LINEAR) for p in planes]
        return merge_channels(planes)

    def _select_outputs(self, output) -> List[np.ndarray]:
        if not isinstance(output, dict):
            return [output]
        if not self.output_names:
            return [next(iter(output.values()))]
        missing = [name for name in self.output_names if name not in output]
        if missing:
            raise ValueError(f"Unable to find output(s) {missing} in {self.model}")
        return [output[name] for name in self.output_names]

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        h, w = mat.shape[:2]
        if (self.input_width <= 0 and self.input_height <= 0) or (w == self.input_width and h == self.input_height):
            return self._predict(mat)
        tile_w = self.input_width if self.input_width > 0 else w
        tile_h = self.input_height if self.input_height > 0 else h
        return apply_tiled(self._predict, mat, tile_w, tile_h, cv2.BORDER_REFLECT)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        n_channels = len(channels)

        def factory():
            height = self.input_height if self.input_height > 0 else _SAMPLE_SIZE + self.padding.y_sum
            width = self.input_width if self.input_width > 0 else _SAMPLE_SIZE + self.padding.x_sum
            shape = self.model.get_output_shape((1, n_channels, height, width))
            if shape is not None and len(shape) == 4 and not self.output_names:
                return get_default_channel_list(int(shape[1]))
            sample = np.zeros((height, width, n_channels), dtype=np.float32)
            raw = self.model.predict(np.zeros((1, n_channels, height, width), dtype=np.float32))
            names = []
            if isinstance(raw, dict) and len(raw) > 1:
                keys = self.output_names if self.output_names else list(raw)
                for key in keys:
                    value = raw.get(key)
                    if value is not None and np.ndim(value) > 2:
                        names.extend(f"{key}: {c}" for c in range(np.shape(value)[1]))
                    else:
                        logger.warning(f"Unknown output shape for {key}, output channels are unknown")
            n_outputs = self.transform_padded(sample).shape[2]
            if len(names) == n_outputs:
                return get_channel_list(*names)
            return get_default_channel_list(n_outputs)

        return self._cached_channels(n_channels, factory)

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return PixelType.FLOAT32

    def get_config(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'input_width': self.input_width,
            'input_height': self.input_height,
            'padding': self.padding.to_dict(),
            'output_names': list(self.output_names),
        }


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def stat_model(model: PredictionModel, request_probabilities: bool = False) -> StatModelOp:
    return StatModelOp(model, request_probabilities)


def dnn(model: PredictionModel, input_width: int = -1, input_height: int = -1,
        padding: Optional[Padding] = None, *output_names: str) -> DnnOp:
    """
    Network op. If the network needs a fixed input size that differs from the
    tile, tiles are split (with reflected padding) and reassembled.
    """
    return DnnOp(model, input_width, input_height, padding, output_names)


def preprocessor(model: PredictionModel) -> FeaturePreprocessorOp:
    return FeaturePreprocessorOp(model)


__all__ = [
    'StatModelOp',
    'FeaturePreprocessorOp',
    'DnnOp',
    'stat_model',
    'dnn',
    'preprocessor',
]
