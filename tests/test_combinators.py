"""
Tests for sequential, split-merge and split-combine ops in pixelops/ops/core.py.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pixelops.exceptions import ConfigurationError
from pixelops.ops import channels, core, filters, normalize
from pixelops.ops.base import Padding, PixelType, get_channel_list, pad_and_apply


class TestSequential:

    def test_padding_is_sum(self):
        a = filters.gaussian_blur(1.0)
        b = filters.mean_filter(2)
        assert core.sequential(a, b).get_padding() == a.get_padding().add(b.get_padding())

    def test_applies_in_order(self):
        mat = np.full((2, 2, 1), 2.0, dtype=np.float32)
        result = core.sequential(core.add(1), core.multiply(10)).apply(mat)
        assert np.all(result == 30)

    def test_channels_and_type_fold(self):
        op = core.sequential(channels.extract(0), core.sqrt(), core.ensure_type('FLOAT64'))
        assert [c.name for c in op.get_channels(get_channel_list('a', 'b'))] == ['a']
        assert op.get_output_type(PixelType.UINT8) is PixelType.FLOAT64

    def test_single_op_returned(self):
        op = filters.gaussian_blur(1.0)
        assert core.sequential(op) is op

    def test_empty_rejected(self):
        with pytest.raises(ConfigurationError):
            core.sequential()


class TestSplitMerge:

    def test_padding_is_max(self):
        a = filters.gaussian_blur(1.0)
        b = filters.filter_2d(np.ones((1, 11)))
        assert core.split_merge(a, b).get_padding() == a.get_padding().max(b.get_padding())

    def test_branches_aligned_and_concatenated(self):
        mat = np.full((20, 20, 2), 7.0, dtype=np.float32)
        op = core.split_merge(core.identity(), filters.gaussian_blur(1.0), filters.maximum(2))
        result = op.apply(mat)
        padding = op.get_padding()
        assert result.shape == (20 - padding.y_sum, 20 - padding.x_sum, 6)
        np.testing.assert_allclose(result, 7.0, atol=1e-5)

    def test_channel_schema(self):
        op = core.split_merge(core.identity(), channels.sum())
        names = [c.name for c in op.get_channels(get_channel_list('a', 'b'))]
        assert names == ['a', 'b', 'Sum [a, b]']

    def test_type_promotion(self):
        mat = np.full((4, 4, 1), 9, dtype=np.uint8)
        op = core.split_merge(core.identity(), core.sqrt())
        result = op.apply(mat)
        assert op.get_output_type(PixelType.UINT8) is PixelType.FLOAT32
        assert result.dtype == np.float32
        np.testing.assert_allclose(result[0, 0], [9.0, 3.0])

    def test_input_not_shared_between_branches(self):
        mat = np.ones((3, 3, 1), dtype=np.float32)
        result = core.split_merge(core.multiply(5), core.identity()).apply(mat)
        np.testing.assert_array_equal(result[0, 0], [5.0, 1.0])

    def test_empty_rejected(self):
        with pytest.raises(ConfigurationError):
            core.split_merge()


class TestSplitCombine:

    def test_subtract_scenario(self):
        mat = np.full((6, 6, 1), 5.0, dtype=np.float32)
        op = core.split_subtract(core.identity(), core.multiply(2))
        result = op.apply(mat)
        assert result.shape == (6, 6, 1)
        assert np.all(result == -5.0)

    def test_channel_names(self):
        op = core.split_subtract(core.identity(), filters.gaussian_blur(1.0))
        channel = op.get_channels(get_channel_list('DAPI'))[0]
        assert channel.name == 'DAPI - DAPI'

    def test_none_is_identity(self):
        op = core.split_add(None, core.multiply(3))
        result = op.apply(np.full((2, 2, 1), 1.0, dtype=np.float32))
        assert np.all(result == 4.0)

    def test_difference_of_gaussians_alignment(self, random_image):
        small = filters.gaussian_blur(1.0)
        large = filters.gaussian_blur(3.0)
        op = core.split_subtract(small, large)
        assert op.get_padding() == large.get_padding()
        expected = pad_and_apply(small, random_image.copy()) - pad_and_apply(large, random_image.copy())
        np.testing.assert_allclose(pad_and_apply(op, random_image.copy()), expected, atol=1e-3)

    def test_channel_mismatch(self):
        op = core.split_add(core.identity(), channels.extract(0))
        with pytest.raises(ConfigurationError):
            op.get_channels(get_channel_list('a', 'b'))
        with pytest.raises(ConfigurationError):
            op.apply(np.zeros((2, 2, 2), dtype=np.float32))

    def test_integer_result_saturates(self):
        mat = np.full((2, 2, 1), 5, dtype=np.uint8)
        result = core.split_subtract(None, core.multiply(2)).apply(mat)
        assert result.dtype == np.uint8
        assert np.all(result == 0)

    def test_divide_promotes_type(self):
        op = core.split_divide(core.identity(), normalize.sigmoid())
        assert op.get_output_type(PixelType.UINT16) is PixelType.FLOAT32

    def test_unknown_combine(self):
        with pytest.raises(ConfigurationError):
            core.SplitCombineOp(None, None, 'modulo')


class TestShapeLawThroughCombinators:

    def test_nested(self):
        op = core.sequential(
            filters.gaussian_blur(1.0),
            core.split_merge(filters.mean_filter(2), filters.maximum(1)),
            core.split_add(core.identity(), filters.median(1)),
        )
        assert op.get_padding() == Padding.symmetric(4 + 2 + 1)
        mat = np.random.default_rng(1).random((30, 26, 1)).astype(np.float32)
        result = op.apply(mat)
        assert result.shape == (30 - 14, 26 - 14, 2)
        assert len(op.get_channels(get_channel_list('x'))) == result.shape[2]
