"""
Type registry and JSON serialization of op graphs.

Every serializable class (ops, data ops, color transforms, prediction models)
is registered under a stable hierarchical tag. An object is written as a
dict holding its tag under "type" plus its get_config() values, with nested
objects written the same way:

    {"type": "op.core.sequential",
     "ops": [{"type": "op.filters.gaussian", "sigma_x": 2.0, "sigma_y": 2.0},
             {"type": "op.core.convert_type", "pixel_type": "FLOAT32"}]}

Tags in the filters, ml, normalize and threshold families are also accepted
without the family name (e.g. "op.gaussian"), as written by older graphs.
An unknown tag or invalid arguments anywhere in a graph fail the whole
decode with SerializationError.

Usage:
    from pixelops.registry import OpRegistry, load_graph, save_graph

    save_graph(op, 'graph.json')
    op = load_graph('graph.json')

    # Register a custom op
    OpRegistry.register('op.custom.my_op', MyOp)
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Sequence, Type, Union

import numpy as np

from pixelops.data import color_transforms, data_ops
from pixelops.exceptions import SerializationError
from pixelops.models import predictors
from pixelops.ops import channels, core, filters, ml, multiscale, normalize, threshold
from pixelops.utils.config import get_config_value
from pixelops.utils.json_utils import NumpyEncoder, atomic_json_dump
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)

TYPE_KEY = 'type'

# Families whose tags may be written without the family name
_LEGACY_FAMILIES = ('filters', 'ml', 'normalize', 'threshold')


class OpRegistry:
    """
    Registry mapping tags to serializable classes.

    A class-based registry (not instantiated). Each class has exactly one
    tag; aliases only add alternative tags for decoding.

    Attributes:
        _registry: Dict mapping tags and aliases to classes
        _tags: Dict mapping classes to their primary tag
    """

    _registry: Dict[str, Type] = {}
    _tags: Dict[Type, str] = {}

    @classmethod
    def register(cls, tag: str, obj_class: Type, aliases: Sequence[str] = ()) -> None:
        """
        Register a class under a tag.

        Args:
            tag: Primary tag (e.g. 'op.filters.gaussian')
            obj_class: Class whose instances are written with this tag
            aliases: Additional tags accepted when decoding

        Raises:
            TypeError: If obj_class is not a class
            ValueError: If the tag, an alias or the class is already registered
                for something else
        """
        if not isinstance(obj_class, type):
            raise TypeError(f"obj_class must be a class, got {type(obj_class)}")

        all_tags = [tag] + list(aliases)
        parts = tag.split('.')
        if len(parts) == 3 and parts[0] == 'op' and parts[1] in _LEGACY_FAMILIES:
            all_tags.append(f"op.{parts[2]}")

        existing_tag = cls._tags.get(obj_class)
        if existing_tag is not None and existing_tag != tag:
            raise ValueError(f"{obj_class.__name__} is already registered as '{existing_tag}'")
        for t in all_tags:
            existing = cls._registry.get(t)
            if existing is not None and existing is not obj_class:
                raise ValueError(f"Tag '{t}' is already registered for {existing.__name__}")

        for t in all_tags:
            cls._registry[t] = obj_class
        cls._tags[obj_class] = tag

    @classmethod
    def create(cls, tag: str, **kwargs: Any) -> Any:
        """
        Create an instance of a registered class.

        Raises:
            SerializationError: If the tag is unknown or the arguments are invalid
        """
        obj_class = cls.get_class(tag)
        try:
            return obj_class(**kwargs)
        except (KeyError, TypeError, ValueError) as e:
            raise SerializationError(f"Unable to create '{tag}': {e}") from e

    @classmethod
    def list_types(cls) -> List[str]:
        """Primary tags of all registered classes."""
        return sorted(cls._tags.values())

    @classmethod
    def get_class(cls, tag: str) -> Type:
        if tag not in cls._registry:
            raise SerializationError(f"Unknown type '{tag}'")
        return cls._registry[tag]

    @classmethod
    def get_tag(cls, obj: Any) -> str:
        """Primary tag for an instance or class."""
        obj_class = obj if isinstance(obj, type) else type(obj)
        tag = cls._tags.get(obj_class)
        if tag is None:
            raise SerializationError(f"{obj_class.__name__} is not registered")
        return tag


# =============================================================================
# ENCODING
# =============================================================================

def _encode(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    if isinstance(value, np.ndarray):
        return value.tolist()
    return to_dict(value)


def to_dict(obj: Any) -> Dict[str, Any]:
    """
    Convert a registered object to a JSON-compatible dict.

    Raises:
        SerializationError: If obj (or anything it contains) is not registered,
            or is a prediction model without a file path
    """
    tag = OpRegistry.get_tag(obj)
    if isinstance(obj, predictors.PredictionModel) and obj.model_path is None:
        raise SerializationError(f"{obj!r} wraps an in-memory model and cannot be serialized")
    data = {TYPE_KEY: tag}
    for key, value in obj.get_config().items():
        data[key] = _encode(value)
    return data


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if TYPE_KEY in value:
            return from_dict(value)
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def from_dict(data: Dict[str, Any]) -> Any:
    """
    Rebuild an object written by to_dict().

    Raises:
        SerializationError: If any tag is unknown or any arguments are invalid
    """
    if not isinstance(data, dict) or TYPE_KEY not in data:
        raise SerializationError(f"Expected a dict with a '{TYPE_KEY}' key, got {type(data).__name__}")
    kwargs = {k: _decode(v) for k, v in data.items() if k != TYPE_KEY}
    return OpRegistry.create(data[TYPE_KEY], **kwargs)


def to_json(obj: Any, indent: Union[int, None] = None) -> str:
    return json.dumps(to_dict(obj), cls=NumpyEncoder, indent=indent, sort_keys=True)


def from_json(text: str) -> Any:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SerializationError(f"Invalid JSON: {e}") from e
    return from_dict(data)


def save_graph(obj: Any, path: Union[str, Path]) -> Path:
    """Write an object to a JSON file (atomically)."""
    path = Path(path)
    data = to_dict(obj)
    atomic_json_dump(data, path, indent=get_config_value('json_indent') or None, sort_keys=True)
    logger.debug(f"Saved {data[TYPE_KEY]} to {path}")
    return path


def load_graph(path: Union[str, Path]) -> Any:
    """Read an object written by save_graph()."""
    path = Path(path)
    with open(path, 'r') as f:
        text = f.read()
    return from_json(text)


# =============================================================================
# REGISTRATION
# =============================================================================

# Filters
OpRegistry.register('op.filters.gaussian', filters.GaussianFilterOp)
OpRegistry.register('op.filters.filter2d', filters.Filter2DOp)
OpRegistry.register('op.filters.circular', filters.CircularFilterOp)
OpRegistry.register('op.filters.morphology', filters.MorphologyOp)
OpRegistry.register('op.filters.median', filters.MedianFilterOp)
OpRegistry.register('op.filters.multiscale', multiscale.MultiscaleFeatureOp)

# Normalization
OpRegistry.register('op.normalize.min_max', normalize.NormalizeMinMaxOp)
OpRegistry.register('op.normalize.percentile', normalize.NormalizePercentileOp)
OpRegistry.register('op.normalize.channels', normalize.NormalizeChannelsOp)
OpRegistry.register('op.normalize.zero_mean_unit_variance', normalize.ZeroMeanUnitVarianceOp)
OpRegistry.register('op.normalize.sigmoid', normalize.SigmoidOp)
OpRegistry.register('op.normalize.local', normalize.LocalNormalizationOp)

# Channels
OpRegistry.register('op.channels.color_deconvolution', channels.ColorDeconvolutionOp)
OpRegistry.register('op.channels.extract', channels.ExtractChannelsOp)
OpRegistry.register('op.channels.repeat', channels.RepeatChannelsOp)
OpRegistry.register('op.channels.reduce', channels.ReduceChannelsOp)

# Threshold
OpRegistry.register('op.threshold.constant', threshold.FixedThresholdOp)
OpRegistry.register('op.threshold.mean_std', threshold.MeanStdDevThresholdOp)
OpRegistry.register('op.threshold.median_mad', threshold.MedianAbsDevThresholdOp)

# Core
OpRegistry.register('op.core.convert_type', core.ConvertTypeOp)
OpRegistry.register('op.core.arithmetic', core.ArithmeticOp)
OpRegistry.register('op.core.power', core.PowerOp)
OpRegistry.register('op.core.math', core.MathFunctionOp)
OpRegistry.register('op.core.rounding', core.RoundingOp)
OpRegistry.register('op.core.clip', core.ClipOp)
OpRegistry.register('op.core.identity', core.IdentityOp)
OpRegistry.register('op.core.replace_value', core.ReplaceValueOp)
OpRegistry.register('op.core.replace_nans', core.ReplaceNaNsOp)
OpRegistry.register('op.core.sequential', core.SequentialOp)
OpRegistry.register('op.core.split_merge', core.SplitMergeOp)
OpRegistry.register('op.core.split_combine', core.SplitCombineOp)

# Machine learning
OpRegistry.register('op.ml.stat_model', ml.StatModelOp)
OpRegistry.register('op.ml.dnn', ml.DnnOp)
OpRegistry.register('op.ml.feature_preprocessor', ml.FeaturePreprocessorOp)

# Data ops
OpRegistry.register('data.op.default', data_ops.DefaultImageDataOp)
OpRegistry.register('data.op.channels', data_ops.ChannelImageDataOp)

# Color transforms
OpRegistry.register('color.extract', color_transforms.ExtractChannel)
OpRegistry.register('color.extract_name', color_transforms.ExtractChannelByName)
OpRegistry.register('color.average', color_transforms.AverageChannels)
OpRegistry.register('color.max', color_transforms.MaxChannels)
OpRegistry.register('color.min', color_transforms.MinChannels)
OpRegistry.register('color.deconvolved', color_transforms.ColorDeconvolvedChannel)

# Prediction models
OpRegistry.register('model.sklearn', predictors.SklearnModel)
OpRegistry.register('model.torch', predictors.TorchModel)
