"""
Stain vectors for color deconvolution of brightfield RGB images.

Stain estimation is out of scope here: stains are given as optical density
vectors (e.g. the defaults below, or values estimated elsewhere) and only
consumed to build the deconvolution matrix.
"""

import math
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np

from pixelops.exceptions import ConfigurationError
from pixelops.ops.base import pack_rgb

HEMATOXYLIN = 'Hematoxylin'
EOSIN = 'Eosin'
DAB = 'DAB'
RESIDUAL = 'Residual'


def _normalize(values: Sequence[float]) -> Tuple[float, float, float]:
    if len(values) != 3:
        raise ConfigurationError(f"Stain vectors need 3 values, got {len(values)}")
    length = math.sqrt(sum(v * v for v in values))
    if length == 0:
        raise ConfigurationError("Stain vector cannot have zero length")
    # Already unit length (e.g. read back from JSON): keep the exact values
    if abs(length - 1.0) < 1e-12:
        return tuple(float(v) for v in values)
    return tuple(float(v) / length for v in values)


@dataclass(frozen=True)
class StainVector:
    """Named unit-length RGB optical density vector."""

    name: str
    od: Tuple[float, float, float]
    is_residual: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'od', _normalize(self.od))

    @property
    def color(self) -> int:
        """Display color: the RGB appearance of the stain at unit density."""
        r, g, b = (int(round(255 * (1 - min(v, 1.0)))) for v in self.od)
        return pack_rgb(r, g, b)

    @classmethod
    def residual(cls, stain1: 'StainVector', stain2: 'StainVector') -> 'StainVector':
        """
        Third stain orthogonal-ish to two others, as used when only two are known.

        Each component is sqrt(1 - a^2 - b^2), or 0 if a^2 + b^2 exceeds 1.
        """
        values = []
        for a, b in zip(stain1.od, stain2.od):
            total = a * a + b * b
            values.append(0.0 if total > 1 else math.sqrt(1.0 - total))
        return cls(RESIDUAL, tuple(values), is_residual=True)

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'od': list(self.od), 'is_residual': self.is_residual}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StainVector':
        return cls(data['name'], tuple(data['od']), bool(data.get('is_residual', False)))


DEFAULT_HEMATOXYLIN = StainVector(HEMATOXYLIN, (0.651, 0.701, 0.290))
DEFAULT_EOSIN = StainVector(EOSIN, (0.216, 0.801, 0.548))
DEFAULT_DAB = StainVector(DAB, (0.269, 0.568, 0.778))


@dataclass(frozen=True)
class ColorDeconvolutionStains:
    """
    Three stain vectors plus the background (white) value of each RGB channel.

    If stain3 is omitted, a residual stain is computed from the first two.
    """

    name: str
    stain1: StainVector
    stain2: StainVector
    stain3: Optional[StainVector] = None
    max_red: float = 255.0
    max_green: float = 255.0
    max_blue: float = 255.0
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False,
                                  repr=False, compare=False)
    _inverse: list = field(default_factory=list, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.stain3 is None:
            object.__setattr__(self, 'stain3', StainVector.residual(self.stain1, self.stain2))

    @classmethod
    def hematoxylin_eosin(cls) -> 'ColorDeconvolutionStains':
        return cls('H&E default', DEFAULT_HEMATOXYLIN, DEFAULT_EOSIN)

    @classmethod
    def hematoxylin_dab(cls) -> 'ColorDeconvolutionStains':
        return cls('H-DAB default', DEFAULT_HEMATOXYLIN, DEFAULT_DAB)

    def get_stain(self, stain_number: int) -> StainVector:
        """Get stain 1, 2 or 3."""
        if stain_number not in (1, 2, 3):
            raise ValueError(f"Stain number must be 1, 2 or 3, got {stain_number}")
        return (self.stain1, self.stain2, self.stain3)[stain_number - 1]

    @property
    def background(self) -> Tuple[float, float, float]:
        return self.max_red, self.max_green, self.max_blue

    def get_matrix_inverse(self) -> np.ndarray:
        """
        Inverse of the matrix whose rows are the three stain vectors.

        Optical densities (N, 3) @ inverse gives stain densities (N, 3).
        Computed once per instance.
        """
        if not self._inverse:
            with self._lock:
                if not self._inverse:
                    matrix = np.array([self.stain1.od, self.stain2.od, self.stain3.od], dtype=np.float64)
                    try:
                        inverse = np.linalg.inv(matrix)
                    except np.linalg.LinAlgError as e:
                        raise ConfigurationError(f"Stain vectors for '{self.name}' are not independent: {e}") from e
                    inverse.setflags(write=False)
                    self._inverse.append(inverse)
        return self._inverse[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'stain1': self.stain1.to_dict(),
            'stain2': self.stain2.to_dict(),
            'stain3': self.stain3.to_dict(),
            'max_red': self.max_red,
            'max_green': self.max_green,
            'max_blue': self.max_blue,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ColorDeconvolutionStains':
        stain3 = data.get('stain3')
        return cls(
            data['name'],
            StainVector.from_dict(data['stain1']),
            StainVector.from_dict(data['stain2']),
            StainVector.from_dict(stain3) if stain3 else None,
            float(data.get('max_red', 255.0)),
            float(data.get('max_green', 255.0)),
            float(data.get('max_blue', 255.0)),
        )

    @classmethod
    def parse(cls, stains: Union['ColorDeconvolutionStains', Dict[str, Any]]) -> 'ColorDeconvolutionStains':
        if isinstance(stains, ColorDeconvolutionStains):
            return stains
        if isinstance(stains, dict):
            return cls.from_dict(stains)
        raise ConfigurationError(f"Cannot interpret {type(stains).__name__} as stains")


def deconvolve_rgb(rgb: np.ndarray, stains: ColorDeconvolutionStains) -> np.ndarray:
    """
    Convert an RGB array (H, W, 3) to stain densities (H, W, 3), float32.

    Optical density per channel is -log10(max(v, 1) / background), clipped at 0.
    """
    h, w = rgb.shape[:2]
    values = rgb.reshape(-1, 3).astype(np.float32)
    background = np.asarray(stains.background, dtype=np.float32)
    od = -np.log10(np.maximum(values, 1.0) / background)
    np.maximum(od, 0, out=od)
    densities = od @ stains.get_matrix_inverse().astype(np.float32)
    return densities.reshape(h, w, 3)
