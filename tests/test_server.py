"""
Tests for image sources, padded region reads and the tiled op server.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pixelops.data import ExtractChannel, build_image_data_op
from pixelops.models import SklearnModel
from pixelops.ops import core, filters, ml, normalize
from pixelops.ops.base import Padding, PixelType, pad_and_apply, pad_border
from pixelops.server import (
    ArrayImageSource,
    ImageOpServer,
    RegionRequest,
    build_server,
    read_padded_region,
)


class TestRegionRequest:

    def test_output_size(self):
        request = RegionRequest(0, 0, 101, 50, downsample=2.0)
        assert request.output_width == 50
        assert request.output_height == 25

    def test_invalid(self):
        with pytest.raises(ValueError):
            RegionRequest(0, 0, 0, 10)
        with pytest.raises(ValueError):
            RegionRequest(0, 0, 10, 10, downsample=0)

    def test_hashable(self):
        assert RegionRequest(1, 2, 3, 4) == RegionRequest(1, 2, 3, 4)
        assert len({RegionRequest(1, 2, 3, 4), RegionRequest(1, 2, 3, 4)}) == 1


class TestArrayImageSource:

    def test_metadata(self, array_source):
        meta = array_source.metadata
        assert (meta.width, meta.height) == (40, 48)
        assert meta.pixel_type is PixelType.FLOAT32
        assert [c.name for c in meta.channels] == ['DAPI', 'GFP']
        assert not meta.is_rgb

    def test_rgb_defaults(self, rgb_source):
        meta = rgb_source.metadata
        assert meta.is_rgb
        assert [c.name for c in meta.channels] == ['Red', 'Green', 'Blue']
        assert meta.pixel_size_um == 0.25

    def test_default_channel_names(self, gradient_image):
        source = ArrayImageSource(gradient_image)
        assert [c.name for c in source.metadata.channels] == ['Channel 1']

    def test_channel_name_count_mismatch(self, random_image):
        with pytest.raises(ValueError):
            ArrayImageSource(random_image, channel_names=['only one'])

    def test_read_region_is_copy(self, array_source, random_image):
        region = array_source.read_region(RegionRequest(4, 6, 10, 12))
        np.testing.assert_array_equal(region, random_image[6:18, 4:14])
        region[:] = -1
        assert array_source.read_region(RegionRequest(4, 6, 10, 12))[0, 0, 0] != -1

    def test_downsampled_read(self, array_source):
        region = array_source.read_region(RegionRequest(0, 0, 40, 48, downsample=2.0))
        assert region.shape == (24, 20, 2)


class TestReadPaddedRegion:

    def test_reflects_at_left_edge(self, gradient_image):
        source = ArrayImageSource(gradient_image)
        region = read_padded_region(source, RegionRequest(0, 0, 5, 1), Padding(2, 0, 0, 0))
        np.testing.assert_array_equal(region[0, :, 0], [1, 0, 0, 1, 2, 3, 4])

    def test_interior_uses_real_pixels(self, gradient_image):
        source = ArrayImageSource(gradient_image)
        region = read_padded_region(source, RegionRequest(10, 5, 4, 2), Padding.symmetric(3))
        assert region.shape == (8, 10, 1)
        np.testing.assert_array_equal(region[0, :, 0], np.arange(7, 17))

    def test_exact_shape_at_corner(self, array_source):
        padding = Padding(3, 5, 7, 2)
        region = read_padded_region(array_source, RegionRequest(32, 40, 8, 8), padding)
        assert region.shape == (8 + 9, 8 + 8, 2)

    def test_margin_larger_than_image(self):
        source = ArrayImageSource(np.arange(3, dtype=np.float32).reshape(1, 3))
        region = read_padded_region(source, RegionRequest(0, 0, 3, 1), Padding(7, 6, 2, 2))
        assert region.shape == (5, 16, 1)
        np.testing.assert_array_equal(region[2, 7:10, 0], [0, 1, 2])
        assert np.isin(region, [0, 1, 2]).all()

    def test_matches_whole_image_padding(self, array_source, random_image):
        padding = Padding.symmetric(4)
        region = read_padded_region(array_source, RegionRequest(0, 0, 40, 48), padding)
        expected = np.pad(random_image, [(4, 4), (4, 4), (0, 0)], mode='symmetric')
        np.testing.assert_array_equal(region, expected)

    def test_downsampled_edge_keeps_real_pixels(self):
        ramp = np.tile(np.arange(11, dtype=np.float32), (11, 1))
        source = ArrayImageSource(ramp)
        level = source.read_region(RegionRequest(0, 0, 11, 11, downsample=2.0))
        assert level.shape == (6, 6, 1)

        region = read_padded_region(source, RegionRequest(8, 0, 3, 8, downsample=2.0), Padding.symmetric(1))
        assert region.shape == (6, 4, 1)
        expected = np.pad(level, [(1, 1), (1, 1), (0, 0)], mode='symmetric')[0:6, 4:8]
        np.testing.assert_array_equal(region, expected)
        # Last real column followed by its reflection
        np.testing.assert_array_equal(region[1, 1:, 0], [level[0, 4, 0], level[0, 5, 0], level[0, 5, 0]])

    def test_no_overlap(self, array_source):
        with pytest.raises(ValueError):
            read_padded_region(array_source, RegionRequest(100, 100, 10, 10))


class TestImageOpServer:

    def test_metadata_from_data_op(self, array_source):
        data_op = build_image_data_op(op=core.split_merge(core.identity(), filters.gaussian_blur(1.0)))
        server = build_server(array_source, data_op, tile_width=16)
        assert server.pixel_type is PixelType.FLOAT32
        assert [c.name for c in server.channels] == ['DAPI', 'GFP', 'DAPI', 'GFP']
        assert (server.tile_width, server.tile_height) == (16, 16)

    def test_channels_are_frozen(self, array_source):
        server = build_server(array_source, build_image_data_op())
        channels = server.channels
        channels.pop()
        assert len(server.channels) == 2

    def test_tile_requests_cover_image(self, array_source):
        server = build_server(array_source, build_image_data_op(), tile_width=16)
        requests = server.get_tile_requests()
        assert len(requests) == 9
        assert sum(r.width * r.height for r in requests) == 40 * 48
        assert requests[2] == RegionRequest(32, 0, 8, 16)
        assert requests[3].y == 16

    def test_tile_request_outside(self, array_source):
        server = build_server(array_source, build_image_data_op(), tile_width=16)
        with pytest.raises(IndexError):
            server.get_tile_request(3, 0)

    def test_full_image_matches_pad_and_apply(self, array_source, random_image):
        op = core.sequential(filters.gaussian_blur(2.0), filters.std_dev_filter(2), normalize.sigmoid())
        server = build_server(array_source, build_image_data_op(op=op), tile_width=16)
        result = server.read_full_image(max_workers=1)
        expected = pad_and_apply(op, random_image.copy())
        assert result.shape == expected.shape
        np.testing.assert_allclose(result, expected, atol=1e-4)

    @pytest.mark.parametrize('op', [
        filters.maximum(1),
        core.sequential(filters.gaussian_blur(1.0), filters.mean_filter(2)),
    ])
    def test_downsampled_partial_tiles_match_whole_level(self, op):
        rng = np.random.default_rng(7)
        image = rng.random((13, 11, 2)).astype(np.float32)
        source = ArrayImageSource(image, source_id='odd')
        server = build_server(source, build_image_data_op(op=op), downsample=2.0, tile_width=4)
        assert len(server.get_tile_requests()) == 4

        level = source.read_region(RegionRequest(0, 0, 11, 13, downsample=2.0))
        padding = op.get_padding()
        expected = op.apply(pad_border(level, padding.y1, padding.y2, padding.x1, padding.x2))
        result = server.read_full_image(max_workers=1)
        assert result.shape == expected.shape == (6, 6, 2)
        np.testing.assert_allclose(result, expected, atol=1e-5)

    def test_threaded_matches_sequential(self, array_source):
        data_op = build_image_data_op(op=filters.median(1))
        single = build_server(array_source, data_op, tile_width=8).read_full_image(max_workers=1)
        threaded = build_server(array_source, data_op, tile_width=8).read_full_image(max_workers=4, progress=True)
        np.testing.assert_array_equal(single, threaded)

    def test_output_type_conversion(self, rgb_source):
        data_op = build_image_data_op(op=core.ensure_type('UINT8'))
        server = build_server(rgb_source, data_op, tile_width=16)
        assert server.pixel_type is PixelType.UINT8
        tile = server.read_tile(server.get_tile_request(0, 0))
        assert tile.dtype == np.uint8

    def test_region_uses_server_downsample(self, array_source):
        server = build_server(array_source, build_image_data_op(), downsample=2.0)
        region = server.read_region(RegionRequest(0, 0, 40, 48))
        assert region.shape == (24, 20, 2)

    def test_cached_tiles_are_copies(self, array_source):
        server = ImageOpServer(array_source, build_image_data_op(), tile_width=16, tile_height=16, cache_tiles=4)
        request = server.get_tile_request(0, 0)
        first = server.read_tile(request)
        first[:] = -1
        second = server.read_tile(request)
        assert second[0, 0, 0] != -1
        assert len(server._cache) == 1
        server.clear_cache()
        assert len(server._cache) == 0

    def test_cache_is_bounded(self, array_source):
        server = ImageOpServer(array_source, build_image_data_op(), tile_width=8, tile_height=8, cache_tiles=3)
        server.read_all_tiles(max_workers=1)
        assert len(server._cache) == 3

    def test_cache_disabled(self, array_source):
        server = ImageOpServer(array_source, build_image_data_op(), tile_width=16, tile_height=16, cache_tiles=0)
        server.read_tile(server.get_tile_request(0, 0))
        assert server._cache is None


class TestServerIdentity:

    def test_same_graph_same_id(self, array_source):
        a = build_server(array_source, build_image_data_op(op=filters.gaussian_blur(1.0)))
        b = build_server(array_source, build_image_data_op(op=filters.gaussian_blur(1.0)))
        assert a.server_id == b.server_id
        assert len(a.server_id) == 64

    def test_different_graph_or_downsample(self, array_source):
        base = build_server(array_source, build_image_data_op(op=filters.gaussian_blur(1.0)))
        other_op = build_server(array_source, build_image_data_op(op=filters.gaussian_blur(2.0)))
        other_ds = build_server(array_source, build_image_data_op(op=filters.gaussian_blur(1.0)), downsample=2.0)
        assert base.server_id != other_op.server_id
        assert base.server_id != other_ds.server_id

    def test_different_source(self, random_image):
        data_op = build_image_data_op(ExtractChannel(0))
        a = build_server(ArrayImageSource(random_image, source_id='a'), data_op)
        b = build_server(ArrayImageSource(random_image, source_id='b'), data_op)
        assert a.server_id != b.server_id

    def test_unserializable_graph_gets_random_id(self, array_source):
        from sklearn.preprocessing import StandardScaler

        scaler = StandardScaler().fit(np.zeros((4, 2)))
        data_op = build_image_data_op(op=ml.preprocessor(SklearnModel(model=scaler)))
        a = build_server(array_source, data_op)
        b = build_server(array_source, data_op)
        assert a.server_id != b.server_id
        assert a.server_id == a.server_id


class TestBuildServer:

    def test_downsample_from_pixel_size(self, rgb_source):
        server = build_server(rgb_source, build_image_data_op(), pixel_size_um=0.5)
        assert server.downsample == pytest.approx(2.0)
        assert server.pixel_size_um == pytest.approx(0.5)
        assert (server.output_width, server.output_height) == (20, 20)

    def test_explicit_downsample_wins(self, rgb_source):
        server = build_server(rgb_source, build_image_data_op(), downsample=4.0, pixel_size_um=0.5)
        assert server.downsample == 4.0

    def test_no_source_pixel_size(self, array_source):
        server = build_server(array_source, build_image_data_op(), pixel_size_um=0.5)
        assert server.downsample == 1.0
        assert server.pixel_size_um is None

    def test_default_tile_size(self, array_source):
        server = build_server(array_source, build_image_data_op())
        assert server.tile_width == 512
        assert len(server.get_tile_requests()) == 1
