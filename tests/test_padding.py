"""
Tests for Padding arithmetic and the padded op contract in pixelops/ops/base.py.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pixelops.ops.base import (
    Padding,
    PixelType,
    get_channel_list,
    get_default_channel_list,
    get_default_gaussian_padding,
    pad_and_apply,
    pad_border,
    strip_padding,
)
from pixelops.ops import filters


class TestPadding:
    """Tests for the Padding value type."""

    def test_empty(self):
        padding = Padding.empty()
        assert padding.is_empty()
        assert padding.x_sum == 0 and padding.y_sum == 0

    def test_symmetric(self):
        padding = Padding.symmetric(3)
        assert padding == Padding(3, 3, 3, 3)
        assert padding.is_symmetric()

    def test_get_padding_variants(self):
        assert Padding.get_padding(2) == Padding(2, 2, 2, 2)
        assert Padding.get_padding(2, 5) == Padding(2, 2, 5, 5)
        assert Padding.get_padding(1, 2, 3, 4) == Padding(1, 2, 3, 4)
        with pytest.raises(ValueError):
            Padding.get_padding(1, 2, 3)

    def test_negative_padding_rejected(self):
        with pytest.raises(ValueError):
            Padding(-1, 0, 0, 0)

    def test_add_sums_each_side(self):
        result = Padding(1, 2, 3, 4).add(Padding(10, 20, 30, 40))
        assert result == Padding(11, 22, 33, 44)

    def test_add_empty_is_identity(self):
        padding = Padding(1, 2, 3, 4)
        assert padding.add(Padding.empty()) == padding
        assert Padding.empty().add(padding) == padding

    def test_max_per_side(self):
        result = Padding(1, 5, 3, 0).max(Padding(2, 4, 3, 1))
        assert result == Padding(2, 5, 3, 1)

    def test_subtract_residual(self):
        assert Padding(5, 5, 4, 4).subtract(Padding(2, 3, 4, 0)) == Padding(3, 2, 0, 4)

    def test_subtract_too_much_raises(self):
        with pytest.raises(ValueError):
            Padding(1, 1, 1, 1).subtract(Padding(2, 0, 0, 0))

    def test_dict_round_trip(self):
        padding = Padding(1, 2, 3, 4)
        assert Padding.from_dict(padding.to_dict()) == padding
        assert Padding.from_dict(None) == Padding.empty()

    def test_default_gaussian_padding(self):
        assert get_default_gaussian_padding(1.0, 1.0) == Padding.symmetric(4)
        assert get_default_gaussian_padding(2.5, 0.5) == Padding(9, 9, 3, 3)


class TestStripAndPad:
    """Tests for strip_padding, pad_border and pad_and_apply."""

    def test_strip_padding_shape(self):
        mat = np.zeros((20, 30, 2), dtype=np.float32)
        result = strip_padding(mat, Padding(1, 2, 3, 4))
        assert result.shape == (13, 27, 2)
        assert result.flags['C_CONTIGUOUS']

    def test_strip_empty_returns_input(self):
        mat = np.zeros((5, 5, 1), dtype=np.uint8)
        assert strip_padding(mat, Padding.empty()) is mat

    def test_strip_too_much_raises(self):
        with pytest.raises(ValueError):
            strip_padding(np.zeros((4, 4, 1)), Padding.symmetric(3))

    def test_pad_border_many_channels(self):
        mat = np.zeros((4, 4, 7), dtype=np.float32)
        result = pad_border(mat, 1, 2, 3, 4)
        assert result.shape == (7, 11, 7)

    def test_pad_border_reflect_repeats_edge(self):
        mat = np.arange(4, dtype=np.float32).reshape(1, 4, 1)
        result = pad_border(mat, 0, 0, 2, 0)
        np.testing.assert_array_equal(result[0, :, 0], [1, 0, 0, 1, 2, 3])

    def test_pad_and_apply_keeps_size(self, gradient_image):
        result = pad_and_apply(filters.gaussian_blur(2.0), gradient_image)
        assert result.shape == gradient_image.shape


class TestShapeLaw:
    """apply() shrinks the input by exactly the declared padding."""

    @pytest.mark.parametrize("op", [
        filters.gaussian_blur(1.5),
        filters.gaussian_blur(2.0, 0.5),
        filters.mean_filter(3),
        filters.maximum(2),
        filters.median(1),
        filters.filter_2d([[1, 2, 1, 0, 0], [0, 1, 0, 0, 0], [1, 2, 1, 0, 0]]),
    ])
    def test_output_size(self, op):
        mat = np.random.default_rng(0).random((40, 36, 1)).astype(np.float32)
        padding = op.get_padding()
        result = op.apply(mat)
        assert result.shape[0] == 40 - padding.y_sum
        assert result.shape[1] == 36 - padding.x_sum

    def test_padding_is_memoized(self):
        op = filters.gaussian_blur(3.0)
        assert op.get_padding() is op.get_padding()


class TestChannelsAndTypes:

    def test_default_channel_names(self):
        names = [c.name for c in get_default_channel_list(3)]
        assert names == ['Channel 1', 'Channel 2', 'Channel 3']

    def test_channel_list_names(self):
        channels = get_channel_list('a', 'b')
        assert [c.name for c in channels] == ['a', 'b']
        assert channels[0].color != channels[1].color

    def test_pixel_type_parse(self):
        assert PixelType.parse('FLOAT32') is PixelType.FLOAT32
        assert PixelType.parse('uint16') is PixelType.UINT16
        assert PixelType.from_dtype(np.float64) is PixelType.FLOAT64

    def test_pixel_type_widest(self):
        assert PixelType.widest([PixelType.UINT8, PixelType.FLOAT32, PixelType.UINT16]) is PixelType.FLOAT32

    def test_unsupported_dtype(self):
        with pytest.raises(ValueError):
            PixelType.from_dtype(np.int32)
