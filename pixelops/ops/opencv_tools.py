"""
Array helpers shared by the op families.

Buffers are (height, width, channels) numpy arrays. OpenCV handles at most a
few channels reliably, so most ops split into 2-D planes, process each plane
with cv2, and stack the results.
"""

import math
from typing import Callable, List, Sequence

import cv2
import numpy as np

from pixelops.ops.base import pad_border
from pixelops.utils.logging import get_logger

logger = get_logger(__name__)


def ensure_3d(mat: np.ndarray) -> np.ndarray:
    """Add a trailing channel axis to 2-D arrays."""
    if mat.ndim == 2:
        return mat[:, :, np.newaxis]
    if mat.ndim != 3:
        raise ValueError(f"Expected a 2-D or 3-D array, got shape {mat.shape}")
    return mat


def split_channels(mat: np.ndarray) -> List[np.ndarray]:
    """Split into contiguous 2-D planes (cv2 rejects strided views)."""
    mat = ensure_3d(mat)
    return [np.ascontiguousarray(mat[:, :, c]) for c in range(mat.shape[2])]


def merge_channels(planes: Sequence[np.ndarray]) -> np.ndarray:
    if not planes:
        raise ValueError("Cannot merge an empty list of channels")
    return np.stack([ensure_3d(p)[:, :, 0] if p.ndim == 3 else p for p in planes], axis=2)


def apply_to_channels(mat: np.ndarray, fn: Callable[[np.ndarray], np.ndarray]) -> np.ndarray:
    """Apply a 2-D function to every channel and stack the results."""
    return merge_channels([fn(plane) for plane in split_channels(mat)])


def to_float(mat: np.ndarray) -> np.ndarray:
    """Convert to float32, leaving float64 arrays as they are."""
    if mat.dtype == np.float64 or mat.dtype == np.float32:
        return mat
    return mat.astype(np.float32)


def float_dtype_for(dtype) -> np.dtype:
    """Output dtype for fractional ops: float64 stays float64, otherwise float32."""
    return np.dtype(np.float64) if np.dtype(dtype) == np.float64 else np.dtype(np.float32)


def saturate_cast(mat: np.ndarray, dtype) -> np.ndarray:
    """
    Convert with OpenCV-style saturation: integer targets are rounded and
    clipped to the representable range, NaN becomes 0.
    """
    dtype = np.dtype(dtype)
    if mat.dtype == dtype:
        return mat
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        values = np.rint(mat.astype(np.float64, copy=False))
        values = np.nan_to_num(values, nan=0.0, posinf=info.max, neginf=info.min)
        return np.clip(values, info.min, info.max).astype(dtype)
    return mat.astype(dtype)


# =============================================================================
# KERNELS
# =============================================================================

def get_circular_kernel(radius: int) -> np.ndarray:
    """Binary float32 disk of size 2r+1, drawn with cv2.circle."""
    size = radius * 2 + 1
    kernel = np.zeros((size, size), dtype=np.float32)
    cv2.circle(kernel, (radius, radius), radius, 1.0, thickness=-1)
    return kernel


def create_default_kernel(radius: int) -> np.ndarray:
    """Morphology structuring element: 3x3 square at radius 1, else an ellipse."""
    if radius == 1:
        return cv2.getStructuringElement(cv2.MORPH_RECT, (3, 3))
    size = radius * 2 + 1
    return cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (size, size))


# =============================================================================
# STATISTICS
# =============================================================================

def channel_percentiles(mat: np.ndarray, percentiles: Sequence[float]) -> np.ndarray:
    """
    Per-channel percentiles ignoring NaN.

    Returns:
        Array of shape (len(percentiles), channels)
    """
    mat = ensure_3d(mat)
    flat = mat.reshape(-1, mat.shape[2]).astype(np.float64, copy=False)
    return np.atleast_2d(np.nanpercentile(flat, list(percentiles), axis=0))


def channel_mean_std(mat: np.ndarray):
    """Per-channel mean and population standard deviation, ignoring NaN."""
    mat = ensure_3d(mat)
    flat = mat.reshape(-1, mat.shape[2]).astype(np.float64, copy=False)
    return np.nanmean(flat, axis=0), np.nanstd(flat, axis=0)


def channel_median_mad(mat: np.ndarray):
    """Per-channel median and median absolute deviation, ignoring NaN."""
    mat = ensure_3d(mat)
    flat = mat.reshape(-1, mat.shape[2]).astype(np.float64, copy=False)
    median = np.nanmedian(flat, axis=0)
    mad = np.nanmedian(np.abs(flat - median), axis=0)
    return median, mad


# =============================================================================
# TILING
# =============================================================================

def apply_tiled(fn: Callable[[np.ndarray], np.ndarray], mat: np.ndarray,
                tile_width: int, tile_height: int,
                border: int = cv2.BORDER_REFLECT) -> np.ndarray:
    """
    Apply a function that requires a fixed input size.

    The input is padded on the bottom/right to a whole number of tiles, each
    tile is processed separately, and the outputs are stitched together. The
    output of fn may be a different size from its input (e.g. a model that
    downsamples); the scale between the two is applied to the assembled
    result before cropping.

    Args:
        fn: Function from a (tile_height, tile_width, C) array to a
            (h, w, K) array
        mat: Input array
        tile_width: Required input width
        tile_height: Required input height
        border: OpenCV border type used for the extra padding

    Returns:
        Stitched output cropped to the input extent
    """
    mat = ensure_3d(mat)
    h, w = mat.shape[:2]
    if w == tile_width and h == tile_height:
        return ensure_3d(fn(mat))

    n_x = int(math.ceil(w / tile_width))
    n_y = int(math.ceil(h / tile_height))
    pad_right = n_x * tile_width - w
    pad_bottom = n_y * tile_height - h
    if pad_right or pad_bottom:
        logger.debug(f"Padding {w}x{h} input to {n_x}x{n_y} tiles of {tile_width}x{tile_height}")
        mat = pad_border(mat, 0, pad_bottom, 0, pad_right, border)

    rows = []
    for ty in range(n_y):
        row = []
        for tx in range(n_x):
            y0, x0 = ty * tile_height, tx * tile_width
            tile = np.ascontiguousarray(mat[y0:y0 + tile_height, x0:x0 + tile_width, :])
            row.append(ensure_3d(fn(tile)))
        rows.append(np.concatenate(row, axis=1))
    output = np.concatenate(rows, axis=0)

    scale_y = output.shape[0] / mat.shape[0]
    scale_x = output.shape[1] / mat.shape[1]
    out_h = int(round(h * scale_y))
    out_w = int(round(w * scale_x))
    return np.ascontiguousarray(output[:out_h, :out_w, :])
