"""
Tests for filter ops in pixelops/ops/filters.py and pixelops/ops/multiscale.py.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pixelops.exceptions import ConfigurationError
from pixelops.ops import core, filters
from pixelops.ops.base import Padding, PixelType, get_channel_list, pad_and_apply
from pixelops.ops.multiscale import MultiscaleFeature
from pixelops.ops.opencv_tools import get_circular_kernel


class TestGaussianFilter:

    def test_padding(self):
        assert filters.gaussian_blur(1.0).get_padding() == Padding.symmetric(4)
        assert filters.gaussian_blur(2.5).get_padding() == Padding.symmetric(9)

    def test_zero_sigma_has_no_padding(self):
        op = filters.gaussian_blur(0.0)
        mat = np.arange(12, dtype=np.float32).reshape(3, 4, 1)
        assert op.get_padding().is_empty()
        np.testing.assert_array_equal(op.apply(mat.copy()), mat)

    def test_constant_image_through_sequence(self, constant_image):
        """Blurring a constant field and converting to float returns the constant."""
        op = core.sequential(filters.gaussian_blur(1.0), core.ensure_type('FLOAT32'))
        result = pad_and_apply(op, constant_image)
        assert result.shape == (10, 10, 3)
        assert result.dtype == np.float32
        np.testing.assert_allclose(result, 100.0, atol=1e-4)

    def test_blur_smooths_step(self):
        mat = np.zeros((21, 21, 1), dtype=np.float32)
        mat[:, 10:] = 1.0
        result = pad_and_apply(filters.gaussian_blur(2.0), mat)
        assert 0.0 < result[10, 9, 0] < 0.5 < result[10, 10, 0] < 1.0

    def test_negative_sigma_rejected(self):
        with pytest.raises(ConfigurationError):
            filters.gaussian_blur(-1.0)

    def test_keeps_type(self):
        assert filters.gaussian_blur(1.0).get_output_type(PixelType.UINT16) is PixelType.UINT16


class TestFilter2D:

    def test_padding_from_kernel_shape(self):
        op = filters.filter_2d(np.ones((3, 5)))
        assert op.get_padding() == Padding(2, 2, 1, 1)

    def test_box_kernel_on_constant(self):
        op = filters.filter_2d(np.full((3, 3), 1 / 9))
        mat = np.full((8, 8, 1), 9.0, dtype=np.float32)
        result = pad_and_apply(op, mat)
        np.testing.assert_allclose(result, 9.0, rtol=1e-5)

    def test_empty_kernel_rejected(self):
        with pytest.raises(ConfigurationError):
            filters.filter_2d([])


class TestCircularFilters:

    def test_mean_of_constant(self):
        mat = np.full((12, 12, 2), 7, dtype=np.uint8)
        result = pad_and_apply(filters.mean_filter(2), mat)
        assert result.dtype == np.float32
        np.testing.assert_allclose(result, 7.0, rtol=1e-5)

    def test_sum_counts_kernel(self):
        mat = np.ones((12, 12, 1), dtype=np.float32)
        result = pad_and_apply(filters.sum_filter(2), mat)
        np.testing.assert_allclose(result, get_circular_kernel(2).sum(), rtol=1e-5)

    def test_variance_of_constant_is_zero(self):
        mat = np.full((12, 12, 1), 3.0, dtype=np.float32)
        result = pad_and_apply(filters.variance_filter(1), mat)
        np.testing.assert_allclose(result, 0.0, atol=1e-4)

    def test_std_dev_is_sqrt_variance(self, random_image):
        variance = pad_and_apply(filters.variance_filter(2), random_image.copy())
        std_dev = pad_and_apply(filters.std_dev_filter(2), random_image.copy())
        np.testing.assert_allclose(std_dev, np.sqrt(variance), rtol=1e-4, atol=1e-4)

    def test_output_type(self):
        assert filters.mean_filter(1).get_output_type(PixelType.UINT8) is PixelType.FLOAT32
        assert filters.mean_filter(1).get_output_type(PixelType.FLOAT64) is PixelType.FLOAT64

    @pytest.mark.parametrize("filter_type,radius", [('median', 1), ('sum', 0)])
    def test_invalid_config(self, filter_type, radius):
        with pytest.raises(ConfigurationError):
            filters.CircularFilterOp(filter_type, radius)


class TestMorphology:

    def _single_point(self):
        mat = np.zeros((11, 11, 1), dtype=np.float32)
        mat[5, 5] = 1.0
        return mat

    def test_maximum_radius_one_is_square(self):
        result = pad_and_apply(filters.maximum(1), self._single_point())
        assert np.count_nonzero(result) == 9
        assert result[4:7, 4:7].min() == 1.0

    def test_minimum_removes_point(self):
        result = pad_and_apply(filters.minimum(1), self._single_point())
        assert np.count_nonzero(result) == 0

    def test_opening_removes_point(self):
        result = pad_and_apply(filters.opening(2), self._single_point())
        assert np.count_nonzero(result) == 0

    def test_closing_keeps_point(self):
        result = pad_and_apply(filters.closing(1), self._single_point())
        assert result[5, 5, 0] == 1.0

    def test_padding_is_radius(self):
        assert filters.maximum(3).get_padding() == Padding.symmetric(3)


class TestMedianFilter:

    def test_removes_salt_noise(self):
        mat = np.full((9, 9, 1), 10, dtype=np.uint8)
        mat[4, 4] = 255
        result = pad_and_apply(filters.median(1), mat)
        assert result.dtype == np.uint8
        assert np.all(result == 10)

    def test_large_radius_float_input(self):
        mat = np.full((16, 16, 1), 2.5, dtype=np.float32)
        mat[8, 8] = 100.0
        result = pad_and_apply(filters.median(3), mat)
        np.testing.assert_allclose(result, 2.5)

    def test_uint16_small_radius(self):
        mat = np.full((9, 9, 2), 1000, dtype=np.uint16)
        mat[3, 3, 1] = 60000
        result = pad_and_apply(filters.median(2), mat)
        assert result.dtype == np.uint16
        assert np.all(result == 1000)


class TestMultiscaleFeatures:

    def test_channel_expansion(self):
        features = [MultiscaleFeature.GAUSSIAN, MultiscaleFeature.GRADIENT_MAGNITUDE]
        op = filters.features(features, 1.0)
        channels = op.get_channels(get_channel_list('DAPI', 'GFP'))
        assert len(channels) == 4
        assert channels[0].name == 'DAPI (Gaussian, sigma=1.0,1.0)'
        assert channels[1].name == 'DAPI (Gradient magnitude, sigma=1.0,1.0)'
        assert channels[2].name.startswith('GFP')

    def test_apply_matches_channels(self, random_image):
        op = filters.features(['GAUSSIAN', 'LAPLACIAN', 'HESSIAN_DETERMINANT',
                               'STRUCTURE_TENSOR_COHERENCE'], 1.0)
        result = pad_and_apply(op, random_image)
        assert result.shape == random_image.shape[:2] + (8,)
        assert result.dtype == np.float32
        assert len(op.get_channels(get_channel_list('a', 'b'))) == result.shape[2]

    def test_padding(self):
        op = filters.features([MultiscaleFeature.GAUSSIAN], 1.0)
        assert op.get_padding() == Padding.symmetric(9)

    def test_gaussian_feature_of_constant(self):
        op = filters.features([MultiscaleFeature.GAUSSIAN, MultiscaleFeature.GRADIENT_MAGNITUDE], 2.0)
        result = pad_and_apply(op, np.full((20, 20, 1), 5.0, dtype=np.float32))
        np.testing.assert_allclose(result[:, :, 0], 5.0, atol=1e-4)
        np.testing.assert_allclose(result[:, :, 1], 0.0, atol=1e-4)

    def test_middle_eigenvalue_rejected(self):
        with pytest.raises(ConfigurationError):
            filters.features([MultiscaleFeature.HESSIAN_EIGENVALUE_MIDDLE], 1.0)

    def test_duplicate_features_removed(self):
        op = filters.features(['GAUSSIAN', 'Gaussian'], 1.0)
        assert op.features == [MultiscaleFeature.GAUSSIAN]
