"""
Image sources and the tiled op server.
"""

from .source import (
    ArrayImageSource,
    ImageMetadata,
    ImageSource,
    RegionRequest,
    read_padded_region,
)
from .op_server import ImageOpServer, build_server

__all__ = [
    'ArrayImageSource',
    'ImageMetadata',
    'ImageSource',
    'RegionRequest',
    'read_padded_region',
    'ImageOpServer',
    'build_server',
]
