"""
Pytest fixtures for pixelops tests.

Provides small sample images, image sources and temporary directories.
"""

import shutil
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def constant_image():
    """
    3-channel 10x10 uint8 image where every pixel is 100.

    Returns:
        np.ndarray: 10x10x3 uint8 array
    """
    return np.full((10, 10, 3), 100, dtype=np.uint8)


@pytest.fixture
def gradient_image():
    """
    Single-channel float32 horizontal ramp from 0 to 63.

    Returns:
        np.ndarray: 32x64x1 float32 array
    """
    ramp = np.tile(np.arange(64, dtype=np.float32), (32, 1))
    return ramp[:, :, np.newaxis]


@pytest.fixture
def random_image():
    """
    Reproducible 2-channel float32 noise image.

    Returns:
        np.ndarray: 48x40x2 float32 array with values in [0, 100)
    """
    rng = np.random.default_rng(42)
    return (rng.random((48, 40, 2)) * 100).astype(np.float32)


@pytest.fixture
def rgb_image():
    """
    Small brightfield-like RGB image: white background with a dark purple square.

    Returns:
        np.ndarray: 40x40x3 uint8 array
    """
    image = np.full((40, 40, 3), 255, dtype=np.uint8)
    image[10:30, 10:30] = [120, 60, 160]
    return image


@pytest.fixture
def array_source(random_image):
    """ArrayImageSource wrapping random_image, with a fixed source id."""
    from pixelops.server.source import ArrayImageSource

    return ArrayImageSource(random_image, source_id='random', channel_names=['DAPI', 'GFP'])


@pytest.fixture
def rgb_source(rgb_image):
    from pixelops.server.source import ArrayImageSource

    return ArrayImageSource(rgb_image, source_id='rgb', pixel_size_um=0.25)


@pytest.fixture
def temp_output_dir():
    """
    Temporary directory for test outputs.

    Yields:
        Path: Path to temporary directory, removed after the test
    """
    temp_dir = tempfile.mkdtemp(prefix="pixelops_test_")
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)
