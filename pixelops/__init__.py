"""
pixelops: composable, padding-aware image ops and a tiled server to apply them.

Modules:
- ops: image ops and combinators (pixelops.ops.core, .filters, .normalize, ...)
- models: prediction model adapters for ML ops
- data: binding of ops to image sources (data ops, color transforms, stains)
- server: image sources and the tiled op server
- registry: serialization of op graphs to JSON
"""

__version__ = "0.1.0"
