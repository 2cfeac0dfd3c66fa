"""
Image ops: composable, padding-aware pixel transforms.

Op families are grouped in modules, each providing factory functions:

    from pixelops.ops import core, filters, normalize

    op = core.sequential(
        filters.gaussian_blur(2.0),
        normalize.local_normalization(10.0, 20.0),
        core.ensure_type('FLOAT32'),
    )
    result = pad_and_apply(op, image)
"""

from .base import (
    ImageChannel,
    ImageOp,
    Padding,
    PaddedOp,
    PixelType,
    get_channel_list,
    get_default_channel_list,
    get_default_gaussian_padding,
    pad_and_apply,
    strip_padding,
)
from .multiscale import MultiscaleFeature

__all__ = [
    'ImageChannel',
    'ImageOp',
    'Padding',
    'PaddedOp',
    'PixelType',
    'MultiscaleFeature',
    'get_channel_list',
    'get_default_channel_list',
    'get_default_gaussian_padding',
    'pad_and_apply',
    'strip_padding',
]
