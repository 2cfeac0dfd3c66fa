"""
Command line interface.

Usage:
    python -m pixelops describe graph.json --channels 3
    python -m pixelops apply graph.json input.npy output.npy --tile-size 256 --workers 4
"""

import argparse
import sys
from typing import List, Optional

import numpy as np

from pixelops import __version__
from pixelops.data import ImageDataOp, build_image_data_op
from pixelops.exceptions import PixelOpsError
from pixelops.ops.base import ImageOp, PixelType, get_default_channel_list
from pixelops.registry import OpRegistry, load_graph
from pixelops.server import ArrayImageSource, build_server
from pixelops.utils.config import get_config_value
from pixelops.utils.logging import get_logger, log_parameters, setup_logging

logger = get_logger(__name__)


def _describe(args) -> int:
    graph = load_graph(args.graph)
    print(f"Type: {OpRegistry.get_tag(graph)}")
    print(f"Padding: {graph.get_padding()}")

    if isinstance(graph, ImageDataOp):
        # Zero-filled stand-in source with the requested channel count
        dtype = np.uint8 if args.channels == 3 else np.float32
        source = ArrayImageSource(np.zeros((1, 1, args.channels), dtype=dtype), source_id='describe')
        if not graph.supports_image(source):
            print(f"Warning: data op does not support a {args.channels}-channel image")
        channels = graph.get_channels(source)
        output_type = graph.get_output_type()
    elif isinstance(graph, ImageOp):
        channels = graph.get_channels(get_default_channel_list(args.channels))
        output_type = graph.get_output_type(PixelType.FLOAT32)
    else:
        print(f"Error: {type(graph).__name__} is not an op or data op", file=sys.stderr)
        return 1

    print(f"Output type: {output_type.name}")
    print(f"Channels ({len(channels)}):")
    for channel in channels:
        print(f"  {channel.name}")
    return 0


def _apply(args) -> int:
    graph = load_graph(args.graph)
    if isinstance(graph, ImageOp):
        graph = build_image_data_op(op=graph)
    elif not isinstance(graph, ImageDataOp):
        print(f"Error: {type(graph).__name__} is not an op or data op", file=sys.stderr)
        return 1

    image = np.load(args.input)
    source = ArrayImageSource(image, source_id=str(args.input))
    workers = args.workers or get_config_value('num_workers')

    log_parameters(logger, {
        'graph': args.graph,
        'input': args.input,
        'output': args.output,
        'image_shape': image.shape,
        'tile_size': args.tile_size,
        'downsample': args.downsample,
        'workers': workers,
    }, title="Applying op graph")

    server = build_server(source, graph, downsample=args.downsample,
                          tile_width=args.tile_size, tile_height=args.tile_size)
    result = server.read_full_image(max_workers=workers, progress=args.progress)
    np.save(args.output, result)
    logger.info(f"Saved {result.shape} {result.dtype} array to {args.output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='pixelops', description='Apply and inspect serialized op graphs')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    parser.add_argument('--log-level', default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help="Logging level (default: 'log_level' config value)")
    parser.add_argument('--log-file', default=None, help='Also append log records to this file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    describe = subparsers.add_parser('describe', help='Print padding, output type and channels of a graph')
    describe.add_argument('graph', help='Graph JSON file')
    describe.add_argument('--channels', type=int, default=1, help='Input channel count (default: 1)')
    describe.set_defaults(func=_describe)

    apply = subparsers.add_parser('apply', help='Apply a graph to a .npy image')
    apply.add_argument('graph', help='Graph JSON file')
    apply.add_argument('input', help='Input .npy array (height, width[, channels])')
    apply.add_argument('output', help='Output .npy path')
    apply.add_argument('--tile-size', type=int, default=None, help="Tile size (default: 'tile_size' config value)")
    apply.add_argument('--downsample', type=float, default=None, help='Output downsample (default: 1)')
    apply.add_argument('--workers', type=int, default=None, help="Worker threads (default: 'num_workers' config value)")
    apply.add_argument('--progress', action='store_true', help='Show a progress bar')
    apply.set_defaults(func=_apply)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(level=args.log_level or get_config_value('log_level'), log_file=args.log_file)

    try:
        return args.func(args)
    except (PixelOpsError, ValueError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
