"""
Tests for threshold ops in pixelops/ops/threshold.py.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pixelops.exceptions import ConfigurationError
from pixelops.ops import threshold
from pixelops.ops.threshold import MAD_TO_STD_DEV


class TestFixedThreshold:

    def test_single_value_broadcast(self, random_image):
        result = threshold.threshold(50).apply(random_image.copy())
        np.testing.assert_array_equal(result, (random_image > 50).astype(np.float32))

    def test_value_per_channel(self):
        mat = np.full((2, 2, 2), 5, dtype=np.uint8)
        result = threshold.threshold(4, 6).apply(mat)
        assert result.dtype == np.uint8
        assert np.all(result[:, :, 0] == 1)
        assert np.all(result[:, :, 1] == 0)

    def test_strictly_greater(self):
        mat = np.array([[[1.0], [2.0]]], dtype=np.float32)
        result = threshold.threshold(1.0).apply(mat)
        np.testing.assert_array_equal(result[0, :, 0], [0, 1])

    def test_requires_value(self):
        with pytest.raises(ConfigurationError):
            threshold.threshold()


class TestMeanStdDevThreshold:

    def test_monotonic_in_k(self, random_image):
        counts = [
            int(np.count_nonzero(threshold.threshold_mean_std(k).apply(random_image.copy())))
            for k in (-1.0, 0.0, 0.5, 1.0, 2.0)
        ]
        assert counts == sorted(counts, reverse=True)
        assert counts[0] > counts[-1]

    def test_zero_k_is_mean(self):
        mat = np.array([[[1.0], [2.0], [3.0], [10.0]]], dtype=np.float32)
        result = threshold.threshold_mean_std(0).apply(mat)
        np.testing.assert_array_equal(result[0, :, 0], [0, 0, 0, 1])


class TestMedianAbsDevThreshold:

    def test_scaling_constant(self):
        assert MAD_TO_STD_DEV == 0.6745

    def test_threshold_value(self):
        op = threshold.threshold_median_abs_dev(1.0)
        plane = np.array([[1.0, 2.0, 3.0, 4.0, 100.0]])
        # median 3, MAD 1
        assert op.get_threshold(plane, 0) == pytest.approx(3.0 + 1.0 / 0.6745)

    def test_robust_to_outlier(self):
        mat = np.array([[[1.0], [2.0], [3.0], [4.0], [100.0]]], dtype=np.float32)
        result = threshold.threshold_median_abs_dev(1.0).apply(mat)
        np.testing.assert_array_equal(result[0, :, 0], [0, 0, 0, 0, 1])

    def test_per_channel_k(self):
        op = threshold.threshold_median_abs_dev(0.0, 100.0)
        assert op.get_config() == {'k': [0.0, 100.0]}
        # Extra channels reuse the last value
        assert op._select(op.k, 5) == 100.0
