"""
Data ops: bind an op chain to regions read from an ImageSource.

A data op reads a padded region (the padding required by its op), builds a
float32 buffer and applies the op, so the result covers exactly the
requested region. Data ops never change after construction; append_ops()
returns a new data op.

Usage:
    from pixelops.data import build_image_data_op
    from pixelops.ops import filters

    data_op = build_image_data_op().append_ops(filters.gaussian_blur(2.0))
    if data_op.supports_image(source):
        result = data_op.apply(source, RegionRequest(0, 0, 512, 512))
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from pixelops.data.color_transforms import ColorTransform
from pixelops.exceptions import ConfigurationError
from pixelops.ops import core
from pixelops.ops.base import (
    ImageChannel,
    ImageOp,
    Padding,
    PixelType,
    get_channel_list,
    strip_padding,
)
from pixelops.ops.opencv_tools import ensure_3d
from pixelops.server.source import ImageSource, RegionRequest, read_padded_region
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)


class ImageDataOp(ABC):
    """
    Base class for data ops.

    Args:
        op: Op applied to the float32 buffer, or None to return it unchanged
    """

    def __init__(self, op: Optional[ImageOp] = None):
        self.op = op

    @abstractmethod
    def _build_buffer(self, source: ImageSource, region: np.ndarray) -> np.ndarray:
        """Convert a padded source region into the float32 input of the op."""

    @abstractmethod
    def _input_channels(self, source: ImageSource) -> List[ImageChannel]:
        """Channels of the buffer built by _build_buffer."""

    @abstractmethod
    def _with_op(self, op: ImageOp) -> 'ImageDataOp':
        """Copy of this data op bound to a different op."""

    def supports_image(self, source: ImageSource) -> bool:
        return True

    def get_padding(self) -> Padding:
        if self.op is None:
            return Padding.empty()
        return self.op.get_padding()

    def apply(self, source: ImageSource, request: RegionRequest) -> np.ndarray:
        """
        Compute the output for a region.

        Returns:
            (output_height, output_width, channels) array of get_output_type()
        """
        padding = self.get_padding()
        region = read_padded_region(source, request, padding)
        buffer = self._build_buffer(source, region)
        if self.op is None:
            return strip_padding(buffer, padding)
        return ensure_3d(self.op.apply(buffer))

    def get_channels(self, source: ImageSource) -> List[ImageChannel]:
        channels = self._input_channels(source)
        if self.op is None:
            return channels
        return self.op.get_channels(channels)

    def get_output_type(self, input_type: PixelType = PixelType.FLOAT32) -> PixelType:
        # The buffer is always float32, whatever the source type
        if self.op is None:
            return PixelType.FLOAT32
        return self.op.get_output_type(PixelType.FLOAT32)

    def append_ops(self, *ops: ImageOp) -> 'ImageDataOp':
        """Return a new data op applying ops after the current op."""
        if not ops:
            return self
        if self.op is None:
            return self._with_op(core.sequential(*ops))
        return self._with_op(core.sequential(self.op, *ops))

    def get_config(self) -> Dict[str, Any]:
        return {'op': self.op}

    def __eq__(self, other):
        if self is other:
            return True
        if type(self) is not type(other):
            return NotImplemented
        return self.get_config() == other.get_config()

    def __hash__(self):
        return hash(type(self))

    def __repr__(self):
        return f"{type(self).__name__}(op={self.op!r})"


class DefaultImageDataOp(ImageDataOp):
    """Use the source channels as they are, converted to float32."""

    def _build_buffer(self, source: ImageSource, region: np.ndarray) -> np.ndarray:
        return ensure_3d(region).astype(np.float32)

    def _input_channels(self, source: ImageSource) -> List[ImageChannel]:
        return list(source.metadata.channels)

    def _with_op(self, op: ImageOp) -> 'DefaultImageDataOp':
        return DefaultImageDataOp(op)


class ChannelImageDataOp(ImageDataOp):
    """
    Build the buffer from color transforms, one channel per transform.

    Args:
        transforms: Color transforms evaluated in order
        op: Op applied to the resulting buffer
    """

    def __init__(self, transforms: Sequence[ColorTransform], op: Optional[ImageOp] = None):
        super().__init__(op)
        transforms = list(transforms)
        if not transforms:
            raise ConfigurationError("A channel data op requires at least one color transform")
        self.transforms = transforms

    def supports_image(self, source: ImageSource) -> bool:
        for transform in self.transforms:
            if not transform.supports_image(source):
                logger.debug(f"{transform!r} does not support {source.source_id}")
                return False
        return True

    def _build_buffer(self, source: ImageSource, region: np.ndarray) -> np.ndarray:
        planes = [transform.extract(source, region) for transform in self.transforms]
        return np.stack(planes, axis=2).astype(np.float32, copy=False)

    def _input_channels(self, source: ImageSource) -> List[ImageChannel]:
        return get_channel_list(*[transform.name for transform in self.transforms])

    def _with_op(self, op: ImageOp) -> 'ChannelImageDataOp':
        return ChannelImageDataOp(self.transforms, op)

    def get_config(self) -> Dict[str, Any]:
        return {'transforms': list(self.transforms), 'op': self.op}

    def __repr__(self):
        return f"ChannelImageDataOp(transforms={self.transforms!r}, op={self.op!r})"


def build_image_data_op(*transforms: ColorTransform, op: Optional[ImageOp] = None) -> ImageDataOp:
    """
    Create a data op.

    With no transforms the source channels are used directly, otherwise the
    buffer has one channel per transform.
    """
    if not transforms:
        return DefaultImageDataOp(op)
    return ChannelImageDataOp(transforms, op)


__all__ = [
    'ImageDataOp',
    'DefaultImageDataOp',
    'ChannelImageDataOp',
    'build_image_data_op',
]
