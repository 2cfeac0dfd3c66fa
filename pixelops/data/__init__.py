"""
Binding of op chains to image sources.

Usage:
    from pixelops.data import build_image_data_op, ExtractChannel

    data_op = build_image_data_op(ExtractChannel(0), ExtractChannel(2))
"""

from .color_transforms import (
    AverageChannels,
    ColorDeconvolvedChannel,
    ColorTransform,
    ExtractChannel,
    ExtractChannelByName,
    MaxChannels,
    MinChannels,
)
from .data_ops import (
    ChannelImageDataOp,
    DefaultImageDataOp,
    ImageDataOp,
    build_image_data_op,
)
from .stains import ColorDeconvolutionStains, StainVector

__all__ = [
    'AverageChannels',
    'ColorDeconvolvedChannel',
    'ColorTransform',
    'ExtractChannel',
    'ExtractChannelByName',
    'MaxChannels',
    'MinChannels',
    'ChannelImageDataOp',
    'DefaultImageDataOp',
    'ImageDataOp',
    'build_image_data_op',
    'ColorDeconvolutionStains',
    'StainVector',
]
