"""
Tests for normalization ops in pixelops/ops/normalize.py.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pixelops.exceptions import ConfigurationError
from pixelops.ops import normalize
from pixelops.ops.base import Padding, PixelType, get_default_gaussian_padding, pad_and_apply


class TestMinMax:

    def test_range(self, gradient_image):
        result = normalize.min_max(0, 1).apply(gradient_image.copy())
        assert result.min() == pytest.approx(0.0, abs=1e-6)
        assert result.max() == pytest.approx(1.0, abs=1e-6)

    def test_constant_input_does_not_raise(self):
        mat = np.full((5, 5, 1), 3.0, dtype=np.float32)
        result = normalize.min_max(0, 1).apply(mat)
        assert np.all(result == 0.0)

    def test_per_channel(self, random_image):
        result = normalize.min_max(-1, 1).apply(random_image.copy())
        for c in range(result.shape[2]):
            assert result[:, :, c].min() == pytest.approx(-1.0, abs=1e-5)
            assert result[:, :, c].max() == pytest.approx(1.0, abs=1e-5)

    def test_keeps_integer_type(self):
        mat = np.array([[10, 20, 30]], dtype=np.uint8)[:, :, np.newaxis]
        result = normalize.min_max(0, 255).apply(mat)
        assert result.dtype == np.uint8
        np.testing.assert_array_equal(result[0, :, 0], [0, 128, 255])


class TestPercentile:

    def test_equal_percentiles_rejected(self):
        with pytest.raises(ConfigurationError):
            normalize.percentile(50, 50)

    def test_out_of_range_rejected(self):
        with pytest.raises(ConfigurationError):
            normalize.percentile(-1, 99)

    def test_full_range_matches_min_max(self, gradient_image):
        result = normalize.percentile(0, 100).apply(gradient_image.copy())
        assert result.dtype == np.float32
        assert result.min() == pytest.approx(0.0, abs=1e-6)
        assert result.max() == pytest.approx(1.0, abs=1e-6)

    def test_runtime_tie_gives_non_finite_values(self):
        mat = np.full((6, 6, 1), 4.0, dtype=np.float32)
        result = normalize.percentile(1, 99).apply(mat)
        assert not np.all(np.isfinite(result))

    def test_output_type(self):
        assert normalize.percentile(1, 99).get_output_type(PixelType.UINT16) is PixelType.FLOAT32


class TestChannelNormalization:

    def test_sum_to_max_value(self, random_image):
        result = normalize.channel_sum(2.0).apply(random_image.copy())
        np.testing.assert_allclose(result.sum(axis=2), 2.0, rtol=1e-5)

    def test_negative_values_clipped(self):
        mat = np.array([[[-1.0, 1.0, 3.0]]], dtype=np.float32)
        result = normalize.channel_sum(1.0).apply(mat)
        np.testing.assert_allclose(result[0, 0], [0.0, 0.25, 0.75])

    def test_zero_sum_gives_zero(self):
        mat = np.zeros((2, 2, 3), dtype=np.float32)
        result = normalize.channel_sum(1.0).apply(mat)
        assert np.all(result == 0)
        assert np.all(np.isfinite(result))

    def test_softmax(self):
        mat = np.array([[[0.0, np.log(3.0)]]], dtype=np.float32)
        result = normalize.channel_softmax(1.0).apply(mat)
        np.testing.assert_allclose(result[0, 0], [0.25, 0.75], rtol=1e-5)


class TestZeroMeanUnitVariance:

    def test_global(self, random_image):
        result = normalize.zero_mean_unit_variance().apply(random_image.copy())
        assert result.mean() == pytest.approx(0.0, abs=1e-4)
        assert result.std() == pytest.approx(1.0, abs=1e-4)

    def test_per_channel(self, random_image):
        mat = random_image.copy()
        mat[:, :, 1] *= 10
        result = normalize.zero_mean_unit_variance(per_channel=True).apply(mat)
        for c in range(2):
            assert result[:, :, c].mean() == pytest.approx(0.0, abs=1e-4)
            assert result[:, :, c].std() == pytest.approx(1.0, abs=1e-4)

    def test_zero_std_gives_zero(self, caplog):
        with caplog.at_level('WARNING', logger='pixelops.ops.normalize'):
            result = normalize.zero_mean_unit_variance().apply(np.full((3, 3, 1), 8, dtype=np.uint8))
        assert result.dtype == np.float32
        assert np.all(result == 0)
        assert 'Standard deviation is zero' in caplog.text

    def test_non_finite_std_gives_nan(self):
        mat = np.array([[[1.0], [np.inf]]], dtype=np.float32)
        result = normalize.zero_mean_unit_variance().apply(mat)
        assert np.all(np.isnan(result))


class TestSigmoid:

    def test_values(self):
        mat = np.array([[[0.0, 100.0, -100.0]]], dtype=np.float32)
        result = normalize.sigmoid().apply(mat)
        np.testing.assert_allclose(result[0, 0], [0.5, 1.0, 0.0], atol=1e-6)


class TestLocalNormalization:

    def test_padding_uses_larger_sigma(self):
        op = normalize.local_normalization(2.0, 5.0)
        assert op.get_padding() == get_default_gaussian_padding(5.0, 5.0)

    def test_constant_input_gives_zero(self):
        mat = np.full((20, 20, 1), 12.0, dtype=np.float32)
        result = pad_and_apply(normalize.local_normalization(2.0), mat)
        np.testing.assert_allclose(result, 0.0, atol=1e-4)

    def test_variance_normalization_is_finite_on_noise(self, random_image):
        result = pad_and_apply(normalize.local_normalization(2.0, 4.0), random_image)
        assert result.shape == random_image.shape
        assert np.all(np.isfinite(result))

    def test_invalid_sigma(self):
        with pytest.raises(ConfigurationError):
            normalize.local_normalization(0.0)

    def test_padding_type(self):
        assert isinstance(normalize.local_normalization(1.0).get_padding(), Padding)
