"""
Tiled server computing data op output lazily, one tile at a time.

The server binds a data op to an image source at a fixed downsample and
tile size. Output channels and pixel type are computed once at construction
and do not follow later changes to the source; build a new server instead.

Tiles can be cached in memory. The cache key combines the server identity,
a SHA-256 hash of the source id and the serialized op graph, with the tile
request. If the graph cannot be serialized, a random identity is used, so
cached tiles are never shared between servers.

Usage:
    from pixelops.server import ArrayImageSource, build_server

    server = build_server(ArrayImageSource(image), data_op, downsample=2.0)
    for request, tile in server.read_all_tiles(max_workers=4, progress=True):
        ...
"""

import hashlib
import threading
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from pixelops.exceptions import SerializationError
from pixelops.ops.base import ImageChannel, PixelType
from pixelops.ops.opencv_tools import ensure_3d, saturate_cast
from pixelops.server.source import ImageMetadata, ImageSource, RegionRequest
from pixelops.utils.config import get_config_value
from pixelops.utils.logging import ProcessingTimer, get_logger

logger = get_logger(__name__)


class _TileCache:
    """Bounded least-recently-used tile cache."""

    def __init__(self, max_tiles: int):
        self.max_tiles = max_tiles
        self._tiles: "OrderedDict[Tuple[str, RegionRequest], np.ndarray]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key) -> Optional[np.ndarray]:
        with self._lock:
            tile = self._tiles.get(key)
            if tile is not None:
                self._tiles.move_to_end(key)
            return tile

    def put(self, key, tile: np.ndarray) -> None:
        with self._lock:
            self._tiles[key] = tile
            self._tiles.move_to_end(key)
            while len(self._tiles) > self.max_tiles:
                self._tiles.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._tiles.clear()

    def __len__(self):
        with self._lock:
            return len(self._tiles)


class ImageOpServer:
    """
    Serve the output of a data op applied to a source.

    Args:
        source: Image to read from
        data_op: Data op to apply (see pixelops.data)
        downsample: Resolution of the output relative to the source
        tile_width: Tile width in output pixels (default: source preference)
        tile_height: Tile height in output pixels (default: source preference)
        cache_tiles: Maximum tiles to keep in memory; 0 disables the cache
            (default: 'tile_cache_size' config value)
        pixel_size_um: Source pixel size to report, overriding the metadata
    """

    def __init__(self, source: ImageSource, data_op, downsample: float = 1.0,
                 tile_width: Optional[int] = None, tile_height: Optional[int] = None,
                 cache_tiles: Optional[int] = None, pixel_size_um: Optional[float] = None):
        if downsample <= 0:
            raise ValueError(f"Downsample must be > 0, got {downsample}")
        source_meta = source.metadata
        self.source = source
        self.data_op = data_op
        self.downsample = float(downsample)
        self.tile_width = int(tile_width or source_meta.preferred_tile_width)
        self.tile_height = int(tile_height or source_meta.preferred_tile_height)
        if self.tile_width <= 0 or self.tile_height <= 0:
            raise ValueError(f"Tile size must be positive, got {self.tile_width}x{self.tile_height}")

        # Frozen at construction
        channels = list(data_op.get_channels(source))
        pixel_type = data_op.get_output_type(source_meta.pixel_type)
        if pixel_size_um is None:
            pixel_size_um = source_meta.pixel_size_um
        self._metadata = ImageMetadata(
            width=source_meta.width,
            height=source_meta.height,
            channels=channels,
            pixel_type=pixel_type,
            is_rgb=False,
            pixel_size_um=pixel_size_um,
            preferred_tile_width=self.tile_width,
            preferred_tile_height=self.tile_height,
        )

        if cache_tiles is None:
            cache_tiles = get_config_value('tile_cache_size')
        self._cache = _TileCache(int(cache_tiles)) if cache_tiles else None
        self._server_id: Optional[str] = None
        self._id_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Metadata and identity
    # -------------------------------------------------------------------------

    @property
    def metadata(self) -> ImageMetadata:
        return self._metadata

    @property
    def channels(self) -> List[ImageChannel]:
        return list(self._metadata.channels)

    @property
    def pixel_type(self) -> PixelType:
        return self._metadata.pixel_type

    @property
    def pixel_size_um(self) -> Optional[float]:
        """Pixel size of the output, in microns."""
        if self._metadata.pixel_size_um is None:
            return None
        return self._metadata.pixel_size_um * self.downsample

    @property
    def output_width(self) -> int:
        return max(1, int(round(self._metadata.width / self.downsample)))

    @property
    def output_height(self) -> int:
        return max(1, int(round(self._metadata.height / self.downsample)))

    @property
    def server_id(self) -> str:
        """Identity combining the source and the serialized data op."""
        if self._server_id is None:
            with self._id_lock:
                if self._server_id is None:
                    self._server_id = self._create_id()
        return self._server_id

    def _create_id(self) -> str:
        from pixelops.registry import to_json

        try:
            graph = to_json(self.data_op)
        except SerializationError as e:
            logger.warning(f"Unable to serialize data op, tiles will not be shared between servers: {e}")
            return uuid.uuid4().hex
        text = f"{self.source.source_id}\n{self.downsample!r}\n{graph}"
        return hashlib.sha256(text.encode('utf-8')).hexdigest()

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    def _to_output(self, mat: np.ndarray) -> np.ndarray:
        mat = ensure_3d(mat)
        dtype = self._metadata.pixel_type.dtype
        if mat.dtype != dtype:
            mat = saturate_cast(mat, dtype)
        return mat

    def read_region(self, request: RegionRequest) -> np.ndarray:
        """
        Compute the output for any region (not cached).

        The request's downsample is ignored in favor of the server downsample.
        """
        if request.downsample != self.downsample:
            request = RegionRequest(request.x, request.y, request.width, request.height, self.downsample)
        return self._to_output(self.data_op.apply(self.source, request))

    def get_tile_request(self, tile_x: int, tile_y: int) -> RegionRequest:
        """Full-resolution request for the tile at column tile_x and row tile_y."""
        x = int(round(tile_x * self.tile_width * self.downsample))
        y = int(round(tile_y * self.tile_height * self.downsample))
        if x >= self._metadata.width or y >= self._metadata.height or x < 0 or y < 0:
            raise IndexError(f"Tile ({tile_x}, {tile_y}) is outside the image")
        x2 = min(self._metadata.width, int(round((tile_x + 1) * self.tile_width * self.downsample)))
        y2 = min(self._metadata.height, int(round((tile_y + 1) * self.tile_height * self.downsample)))
        return RegionRequest(x, y, x2 - x, y2 - y, self.downsample)

    def get_tile_requests(self) -> List[RegionRequest]:
        """Requests covering the whole image, row by row."""
        n_x = -(-self.output_width // self.tile_width)
        n_y = -(-self.output_height // self.tile_height)
        requests = []
        for ty in range(n_y):
            for tx in range(n_x):
                try:
                    requests.append(self.get_tile_request(tx, ty))
                except IndexError:
                    # Rounding can leave the last tile empty
                    continue
        return requests

    def read_tile(self, request: RegionRequest) -> np.ndarray:
        """Compute a tile, using the cache when enabled."""
        if self._cache is None:
            return self.read_region(request)
        key = (self.server_id, request)
        tile = self._cache.get(key)
        if tile is None:
            tile = self.read_region(request)
            self._cache.put(key, tile)
        # Callers may modify the tile in place
        return tile.copy()

    def read_all_tiles(self, max_workers: Optional[int] = None,
                       progress: bool = False) -> List[Tuple[RegionRequest, np.ndarray]]:
        """
        Compute every tile, in row order.

        Args:
            max_workers: Worker threads (default: 'num_workers' config value)
            progress: Show a tqdm progress bar

        Returns:
            List of (request, tile) pairs
        """
        requests = self.get_tile_requests()
        if max_workers is None:
            max_workers = get_config_value('num_workers')

        with ProcessingTimer(logger, f"Computing {len(requests)} tiles"):
            if max_workers <= 1 or len(requests) <= 1:
                iterator = tqdm(requests, desc="Tiles") if progress else requests
                tiles = [self.read_tile(r) for r in iterator]
            else:
                with ThreadPoolExecutor(max_workers=max_workers) as executor:
                    iterator = executor.map(self.read_tile, requests)
                    if progress:
                        iterator = tqdm(iterator, total=len(requests), desc="Tiles")
                    tiles = list(iterator)
        return list(zip(requests, tiles))

    def read_full_image(self, max_workers: Optional[int] = None, progress: bool = False) -> np.ndarray:
        """Assemble all tiles into one array at the server downsample."""
        output = np.zeros((self.output_height, self.output_width, len(self.channels)),
                          dtype=self._metadata.pixel_type.dtype)
        for request, tile in self.read_all_tiles(max_workers, progress):
            x = int(round(request.x / self.downsample))
            y = int(round(request.y / self.downsample))
            h = min(tile.shape[0], output.shape[0] - y)
            w = min(tile.shape[1], output.shape[1] - x)
            output[y:y + h, x:x + w] = tile[:h, :w]
        return output

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    def __repr__(self):
        return (f"ImageOpServer(source={self.source.source_id!r}, downsample={self.downsample}, "
                f"tile={self.tile_width}x{self.tile_height})")


def build_server(source: ImageSource, data_op, downsample: Optional[float] = None,
                 pixel_size_um: Optional[float] = None, tile_width: Optional[int] = None,
                 tile_height: Optional[int] = None) -> ImageOpServer:
    """
    Create a server for a data op.

    The downsample is taken from, in order: the downsample argument, the
    ratio of pixel_size_um to the source pixel size, or 1.0. Tile sizes
    default to the 'tile_size' config value.

    Args:
        source: Image to read from
        data_op: Data op to apply
        downsample: Output downsample
        pixel_size_um: Requested output pixel size in microns
        tile_width: Tile width in output pixels
        tile_height: Tile height in output pixels
    """
    source_pixel_size = source.metadata.pixel_size_um
    if downsample is None:
        if pixel_size_um is not None and source_pixel_size:
            downsample = pixel_size_um / source_pixel_size
        else:
            if pixel_size_um is not None:
                logger.warning("Source has no pixel size, ignoring requested pixel size")
            downsample = 1.0

    tile_size = get_config_value('tile_size')
    if not data_op.supports_image(source):
        logger.warning(f"Data op does not support {source.source_id}, output may be invalid")

    server = ImageOpServer(
        source,
        data_op,
        downsample=downsample,
        tile_width=tile_width or tile_size,
        tile_height=tile_height or tile_width or tile_size,
    )
    logger.debug(f"Created {server}")
    return server
