"""
Color transforms: named functions producing one derived channel from a region.

A ChannelImageDataOp evaluates a list of transforms over each padded region
to build its initial buffer, one float32 plane per transform.

Usage:
    from pixelops.data.color_transforms import ColorDeconvolvedChannel, ExtractChannel
    from pixelops.data.stains import ColorDeconvolutionStains

    transforms = [
        ColorDeconvolvedChannel(ColorDeconvolutionStains.hematoxylin_eosin(), 1),
        ExtractChannel(2),
    ]
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Union

import numpy as np

from pixelops.data.stains import ColorDeconvolutionStains, deconvolve_rgb
from pixelops.exceptions import ConfigurationError
from pixelops.ops.base import PixelType
from pixelops.ops.opencv_tools import ensure_3d
from pixelops.server.source import ImageSource


class ColorTransform(ABC):
    """Derive a single channel from a region of an image."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Name of the channel this transform produces."""

    def supports_image(self, source: ImageSource) -> bool:
        return True

    @abstractmethod
    def extract(self, source: ImageSource, region: np.ndarray) -> np.ndarray:
        """
        Compute the channel for a region read from source.

        Args:
            source: Image the region was read from (for metadata lookups)
            region: (height, width, channels) pixels in the source's type

        Returns:
            (height, width) float32 array
        """

    def get_config(self) -> Dict[str, Any]:
        return {}

    def __eq__(self, other):
        if self is other:
            return True
        if type(self) is not type(other):
            return NotImplemented
        return self.get_config() == other.get_config()

    def __hash__(self):
        return hash(type(self))

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"


class ExtractChannel(ColorTransform):
    """Channel at a zero-based index, named 'Channel i+1'."""

    def __init__(self, channel_index: int):
        channel_index = int(channel_index)
        if channel_index < 0:
            raise ConfigurationError(f"Channel index must be >= 0, got {channel_index}")
        self.channel_index = channel_index

    @property
    def name(self) -> str:
        return f"Channel {self.channel_index + 1}"

    def supports_image(self, source: ImageSource) -> bool:
        return self.channel_index < source.metadata.n_channels

    def extract(self, source: ImageSource, region: np.ndarray) -> np.ndarray:
        region = ensure_3d(region)
        return region[:, :, self.channel_index].astype(np.float32)

    def get_config(self) -> Dict[str, Any]:
        return {'channel_index': self.channel_index}


class ExtractChannelByName(ColorTransform):
    """Channel looked up by name in the source metadata."""

    def __init__(self, channel_name: str):
        self.channel_name = str(channel_name)

    @property
    def name(self) -> str:
        return self.channel_name

    def _index(self, source: ImageSource) -> int:
        for i, channel in enumerate(source.metadata.channels):
            if channel.name == self.channel_name:
                return i
        return -1

    def supports_image(self, source: ImageSource) -> bool:
        return self._index(source) >= 0

    def extract(self, source: ImageSource, region: np.ndarray) -> np.ndarray:
        index = self._index(source)
        if index < 0:
            raise ValueError(f"No channel named '{self.channel_name}' in {source.source_id}")
        return ensure_3d(region)[:, :, index].astype(np.float32)

    def get_config(self) -> Dict[str, Any]:
        return {'channel_name': self.channel_name}


class _ReduceChannels(ColorTransform):

    _name = ''

    @property
    def name(self) -> str:
        return self._name

    @staticmethod
    def _reduce(values: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def extract(self, source: ImageSource, region: np.ndarray) -> np.ndarray:
        values = ensure_3d(region).astype(np.float32)
        return self._reduce(values).astype(np.float32)


class AverageChannels(_ReduceChannels):
    _name = 'Average channels'

    @staticmethod
    def _reduce(values):
        return values.mean(axis=2)


class MaxChannels(_ReduceChannels):
    _name = 'Max channels'

    @staticmethod
    def _reduce(values):
        return values.max(axis=2)


class MinChannels(_ReduceChannels):
    _name = 'Min channels'

    @staticmethod
    def _reduce(values):
        return values.min(axis=2)


class ColorDeconvolvedChannel(ColorTransform):
    """
    One stain density channel from an 8-bit RGB image.

    Args:
        stains: Stains (or their dict form) to deconvolve with
        stain_number: 1, 2 or 3
    """

    def __init__(self, stains: Union[ColorDeconvolutionStains, Dict[str, Any]], stain_number: int):
        stain_number = int(stain_number)
        if stain_number not in (1, 2, 3):
            raise ConfigurationError(f"Stain number must be 1, 2 or 3, got {stain_number}")
        self.stains = ColorDeconvolutionStains.parse(stains)
        self.stain_number = stain_number

    @property
    def name(self) -> str:
        return self.stains.get_stain(self.stain_number).name

    def supports_image(self, source: ImageSource) -> bool:
        meta = source.metadata
        return meta.is_rgb and meta.pixel_type == PixelType.UINT8 and meta.n_channels == 3

    def extract(self, source: ImageSource, region: np.ndarray) -> np.ndarray:
        densities = deconvolve_rgb(ensure_3d(region), self.stains)
        return np.ascontiguousarray(densities[:, :, self.stain_number - 1])

    def get_config(self) -> Dict[str, Any]:
        return {'stains': self.stains.to_dict(), 'stain_number': self.stain_number}


__all__ = [
    'ColorTransform',
    'ExtractChannel',
    'ExtractChannelByName',
    'AverageChannels',
    'MaxChannels',
    'MinChannels',
    'ColorDeconvolvedChannel',
]
