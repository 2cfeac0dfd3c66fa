"""
Core ops: type conversion, arithmetic, elementwise math and the combinators
that compose other ops.

Combinators:
    sequential(a, b, c)      - apply ops in order; padding is summed per side
    split_merge(a, b)        - apply ops to copies and concatenate channels;
                               padding is the per-side maximum
    split_subtract(a, b)     - apply ops to copies and combine elementwise
                               (also split_add, split_multiply, split_divide)

Branches of split_merge and the split_* combinators may declare different
output types. Their results are promoted to the widest type among them
(UINT8 < UINT16 < FLOAT32 < FLOAT64), which is also the declared output type.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from pixelops.exceptions import ConfigurationError
from pixelops.ops.base import (
    ImageChannel,
    ImageOp,
    Padding,
    PaddedOp,
    PixelType,
    strip_padding,
)
from pixelops.ops.opencv_tools import ensure_3d, float_dtype_for, saturate_cast
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)


def _float_output_type(input_type: PixelType) -> PixelType:
    return PixelType.FLOAT64 if input_type == PixelType.FLOAT64 else PixelType.FLOAT32


def _log_non_finite(name: str, result: np.ndarray, mat: np.ndarray) -> None:
    """Debug-log how many finite inputs produced non-finite outputs."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    created = int(np.count_nonzero(~np.isfinite(result) & np.isfinite(mat)))
    if created:
        logger.debug(f"{name}: {created} values outside the valid domain gave NaN or infinity")


# =============================================================================
# TYPE CONVERSION AND ARITHMETIC
# =============================================================================

class ConvertTypeOp(ImageOp):
    """Convert to a fixed pixel type (integer targets are rounded and saturated)."""

    def __init__(self, pixel_type: Union[PixelType, str]):
        super().__init__()
        self.pixel_type = PixelType.parse(pixel_type)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        return saturate_cast(mat, self.pixel_type.dtype)

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return self.pixel_type

    def get_config(self) -> Dict[str, Any]:
        return {'pixel_type': self.pixel_type.name}


class ArithmeticOp(ImageOp):
    """
    Multiply, divide, add or subtract one value for all channels, or one
    value per channel.

    Raises:
        ConfigurationError: If no values are given, or (when channels are
            known) the number of values is neither 1 nor the channel count
    """

    OPERATIONS = {
        'multiply': np.multiply,
        'divide': np.divide,
        'add': np.add,
        'subtract': np.subtract,
    }

    def __init__(self, operation: str, values: Sequence[float]):
        super().__init__()
        if operation not in self.OPERATIONS:
            raise ConfigurationError(
                f"Unknown arithmetic operation '{operation}'. Available: {', '.join(self.OPERATIONS)}"
            )
        values = [float(v) for v in values]
        if not values:
            raise ConfigurationError(f"{operation} requires at least one value")
        self.operation = operation
        self.values = values

    def _check_channels(self, n_channels: int) -> None:
        if len(self.values) != 1 and len(self.values) != n_channels:
            raise ConfigurationError(
                f"{self.operation} has {len(self.values)} values, "
                f"but the image has {n_channels} channels"
            )

    def apply(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        self._check_channels(mat.shape[2])
        values = np.asarray(self.values, dtype=np.float64)
        fn = self.OPERATIONS[self.operation]
        if mat.dtype.kind == 'f':
            with np.errstate(divide='ignore', invalid='ignore'):
                return fn(mat, values.astype(mat.dtype)).astype(mat.dtype, copy=False)
        with np.errstate(divide='ignore', invalid='ignore'):
            result = fn(mat.astype(np.float64), values)
        return saturate_cast(result, mat.dtype)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        self._check_channels(len(channels))
        return list(channels)

    def get_config(self) -> Dict[str, Any]:
        return {'operation': self.operation, 'values': list(self.values)}


class PowerOp(ImageOp):
    """Raise to a power. Out-of-domain inputs (e.g. negative with a fractional power) give NaN."""

    def __init__(self, power: float):
        super().__init__()
        self.power = float(power)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        values = mat.astype(float_dtype_for(mat.dtype))
        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            result = np.power(values, values.dtype.type(self.power))
        _log_non_finite('pow', result, values)
        return result

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return _float_output_type(input_type)

    def get_config(self) -> Dict[str, Any]:
        return {'power': self.power}


class MathFunctionOp(ImageOp):
    """
    Elementwise sqrt, exp or log with floating point output.

    log(0) gives -inf and log or sqrt of a negative value gives NaN.
    """

    FUNCTIONS = {
        'sqrt': np.sqrt,
        'exp': np.exp,
        'log': np.log,
    }

    def __init__(self, function: str):
        super().__init__()
        if function not in self.FUNCTIONS:
            raise ConfigurationError(
                f"Unknown function '{function}'. Available: {', '.join(self.FUNCTIONS)}"
            )
        self.function = function

    def apply(self, mat: np.ndarray) -> np.ndarray:
        values = mat.astype(float_dtype_for(mat.dtype))
        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            result = self.FUNCTIONS[self.function](values)
        _log_non_finite(self.function, result, values)
        return result

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return _float_output_type(input_type)

    def get_config(self) -> Dict[str, Any]:
        return {'function': self.function}


class RoundingOp(ImageOp):
    """Round, floor or ceil floating point values. Integers and non-finite values are untouched."""

    FUNCTIONS = {
        'round': np.rint,
        'floor': np.floor,
        'ceil': np.ceil,
    }

    def __init__(self, mode: str):
        super().__init__()
        if mode not in self.FUNCTIONS:
            raise ConfigurationError(
                f"Unknown rounding mode '{mode}'. Available: {', '.join(self.FUNCTIONS)}"
            )
        self.mode = mode

    def apply(self, mat: np.ndarray) -> np.ndarray:
        if mat.dtype.kind != 'f':
            return mat
        return self.FUNCTIONS[self.mode](mat)

    def get_config(self) -> Dict[str, Any]:
        return {'mode': self.mode}


class ClipOp(ImageOp):

    def __init__(self, min_value: float, max_value: float):
        super().__init__()
        if min_value > max_value:
            raise ConfigurationError(f"Clip minimum {min_value} is above maximum {max_value}")
        self.min_value = float(min_value)
        self.max_value = float(max_value)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        if mat.dtype.kind == 'f':
            return np.clip(mat, self.min_value, self.max_value).astype(mat.dtype, copy=False)
        return saturate_cast(np.clip(mat.astype(np.float64), self.min_value, self.max_value), mat.dtype)

    def get_config(self) -> Dict[str, Any]:
        return {'min_value': self.min_value, 'max_value': self.max_value}


class IdentityOp(ImageOp):
    """Return the input unchanged."""

    def apply(self, mat: np.ndarray) -> np.ndarray:
        return mat


class ReplaceValueOp(ImageOp):
    """Replace every occurrence of one value (which may be NaN) by another."""

    def __init__(self, original_value: float, new_value: float):
        super().__init__()
        self.original_value = float(original_value)
        self.new_value = float(new_value)

    def apply(self, mat: np.ndarray) -> np.ndarray:
        if math.isnan(self.original_value):
            if mat.dtype.kind != 'f':
                return mat
            mask = np.isnan(mat)
        else:
            mask = mat == self.original_value
        if np.any(mask):
            mat = mat.copy() if not mat.flags.writeable else mat
            mat[mask] = saturate_cast(np.asarray([self.new_value]), mat.dtype)[0]
        return mat

    def get_config(self) -> Dict[str, Any]:
        return {'original_value': self.original_value, 'new_value': self.new_value}


class ReplaceNaNsOp(ReplaceValueOp):
    """Replace NaN values (floating point images only)."""

    def __init__(self, value: float):
        super().__init__(float('nan'), value)

    def get_config(self) -> Dict[str, Any]:
        return {'value': self.new_value}


# =============================================================================
# COMBINATORS
# =============================================================================

def _promote(mat: np.ndarray, pixel_type: PixelType) -> np.ndarray:
    if mat.dtype == pixel_type.dtype:
        return mat
    return saturate_cast(mat, pixel_type.dtype)


class SequentialOp(PaddedOp):
    """Apply ops one after another."""

    def __init__(self, ops: Sequence[ImageOp]):
        super().__init__()
        ops = list(ops)
        if not ops:
            raise ConfigurationError("A sequential op requires at least one op")
        self.ops = ops

    def calculate_padding(self) -> Padding:
        padding = Padding.empty()
        for op in self.ops:
            padding = padding.add(op.get_padding())
        return padding

    def apply(self, mat: np.ndarray) -> np.ndarray:
        for op in self.ops:
            mat = op.apply(mat)
        return mat

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        # Each op strips its own padding, so there is nothing left to remove
        logger.warning("transform_padded should not be called directly for a sequential op")
        return self.apply(mat)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        for op in self.ops:
            channels = op.get_channels(channels)
        return channels

    def get_output_type(self, input_type: PixelType) -> PixelType:
        for op in self.ops:
            input_type = op.get_output_type(input_type)
        return input_type

    def get_config(self) -> Dict[str, Any]:
        return {'ops': list(self.ops)}


class SplitMergeOp(PaddedOp):
    """Apply each op to a copy of the input and concatenate the outputs as channels."""

    def __init__(self, ops: Sequence[ImageOp]):
        super().__init__()
        ops = list(ops)
        if not ops:
            raise ConfigurationError("A split-merge op requires at least one op")
        self.ops = ops

    def calculate_padding(self) -> Padding:
        padding = Padding.empty()
        for op in self.ops:
            padding = padding.max(op.get_padding())
        return padding

    def apply(self, mat: np.ndarray) -> np.ndarray:
        return self.transform_padded(mat)

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        if len(self.ops) == 1:
            return self.ops[0].apply(mat)
        padding = self.get_padding()
        outputs = []
        for op in self.ops:
            output = op.apply(mat.copy())
            extra = padding.subtract(op.get_padding())
            outputs.append(ensure_3d(strip_padding(output, extra)))
        output_type = PixelType.widest([PixelType.from_dtype(o.dtype) for o in outputs])
        return np.concatenate([_promote(o, output_type) for o in outputs], axis=2)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        merged = []
        for op in self.ops:
            merged.extend(op.get_channels(channels))
        return merged

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return PixelType.widest([op.get_output_type(input_type) for op in self.ops])

    def get_config(self) -> Dict[str, Any]:
        return {'ops': list(self.ops)}


class SplitCombineOp(PaddedOp):
    """
    Apply two ops to copies of the input and combine the results elementwise.

    Channel names become 'left op right', keeping the left colors.
    """

    COMBINATIONS = {
        'add': ('+', np.add),
        'subtract': ('-', np.subtract),
        'multiply': ('*', np.multiply),
        'divide': ('/', np.divide),
    }

    def __init__(self, op1: Optional[ImageOp], op2: Optional[ImageOp], combine: str):
        super().__init__()
        if combine not in self.COMBINATIONS:
            raise ConfigurationError(
                f"Unknown combine type '{combine}'. Available: {', '.join(self.COMBINATIONS)}"
            )
        self.op1 = op1 if op1 is not None else IdentityOp()
        self.op2 = op2 if op2 is not None else IdentityOp()
        self.combine = combine

    def calculate_padding(self) -> Padding:
        return self.op1.get_padding().max(self.op2.get_padding())

    def apply(self, mat: np.ndarray) -> np.ndarray:
        return self.transform_padded(mat)

    def transform_padded(self, mat: np.ndarray) -> np.ndarray:
        padding = self.get_padding()
        mat2 = self.op2.apply(mat.copy())
        mat1 = self.op1.apply(mat)
        mat1 = ensure_3d(strip_padding(mat1, padding.subtract(self.op1.get_padding())))
        mat2 = ensure_3d(strip_padding(mat2, padding.subtract(self.op2.get_padding())))
        if mat1.shape[2] != mat2.shape[2]:
            raise ConfigurationError(
                f"Channel counts do not match ({mat1.shape[2]} and {mat2.shape[2]})"
            )

        output_type = PixelType.widest([PixelType.from_dtype(mat1.dtype), PixelType.from_dtype(mat2.dtype)])
        fn = self.COMBINATIONS[self.combine][1]
        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            if output_type.is_floating_point:
                return fn(_promote(mat1, output_type), _promote(mat2, output_type)).astype(
                    output_type.dtype, copy=False)
            result = fn(mat1.astype(np.float64), mat2.astype(np.float64))
        return saturate_cast(result, output_type.dtype)

    def get_channels(self, channels: List[ImageChannel]) -> List[ImageChannel]:
        c1 = self.op1.get_channels(channels)
        c2 = self.op2.get_channels(channels)
        if len(c1) != len(c2):
            raise ConfigurationError(f"Channel counts do not match ({len(c1)} and {len(c2)})")
        symbol = self.COMBINATIONS[self.combine][0]
        return [ImageChannel(f"{a.name} {symbol} {b.name}", a.color) for a, b in zip(c1, c2)]

    def get_output_type(self, input_type: PixelType) -> PixelType:
        return PixelType.widest([self.op1.get_output_type(input_type),
                                 self.op2.get_output_type(input_type)])

    def get_config(self) -> Dict[str, Any]:
        return {'op1': self.op1, 'op2': self.op2, 'combine': self.combine}


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def ensure_type(pixel_type: Union[PixelType, str]) -> ConvertTypeOp:
    return ConvertTypeOp(pixel_type)


def multiply(*values: float) -> ArithmeticOp:
    return ArithmeticOp('multiply', values)


def divide(*values: float) -> ArithmeticOp:
    return ArithmeticOp('divide', values)


def add(*values: float) -> ArithmeticOp:
    return ArithmeticOp('add', values)


def subtract(*values: float) -> ArithmeticOp:
    return ArithmeticOp('subtract', values)


def power(value: float) -> PowerOp:
    return PowerOp(value)


def sqrt() -> MathFunctionOp:
    return MathFunctionOp('sqrt')


def exp() -> MathFunctionOp:
    return MathFunctionOp('exp')


def log() -> MathFunctionOp:
    """Natural logarithm."""
    return MathFunctionOp('log')


def round() -> RoundingOp:  # noqa: A001
    return RoundingOp('round')


def floor() -> RoundingOp:
    return RoundingOp('floor')


def ceil() -> RoundingOp:
    return RoundingOp('ceil')


def clip(min_value: float, max_value: float) -> ClipOp:
    return ClipOp(min_value, max_value)


def identity() -> IdentityOp:
    return IdentityOp()


def replace(original_value: float, new_value: float) -> ReplaceValueOp:
    return ReplaceValueOp(original_value, new_value)


def replace_nans(value: float) -> ReplaceNaNsOp:
    return ReplaceNaNsOp(value)


def sequential(*ops: ImageOp) -> ImageOp:
    """
    Apply ops in order.

    A single op is returned as it is.

    Raises:
        ConfigurationError: If no ops are given
    """
    if len(ops) == 1:
        return ops[0]
    return SequentialOp(ops)


def split_merge(*ops: ImageOp) -> SplitMergeOp:
    return SplitMergeOp(ops)


def split_add(op1: Optional[ImageOp], op2: Optional[ImageOp]) -> SplitCombineOp:
    return SplitCombineOp(op1, op2, 'add')


def split_subtract(op1: Optional[ImageOp], op2: Optional[ImageOp]) -> SplitCombineOp:
    return SplitCombineOp(op1, op2, 'subtract')


def split_multiply(op1: Optional[ImageOp], op2: Optional[ImageOp]) -> SplitCombineOp:
    return SplitCombineOp(op1, op2, 'multiply')


def split_divide(op1: Optional[ImageOp], op2: Optional[ImageOp]) -> SplitCombineOp:
    return SplitCombineOp(op1, op2, 'divide')
