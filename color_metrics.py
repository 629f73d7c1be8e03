"""
Color distance metrics and the shared perceptual (L*A*B*) lookup table.

Colors are packed RGBA8888 ints: red in the high byte, alpha in the low byte.
Every bulk table in this package is indexed by the RGB555 "bucket" of a color,
so there are exactly 32768 buckets no matter how many colors an image uses.
"""

import logging
import math
import threading
from enum import Enum
from typing import Tuple

import numpy as np

logger = logging.getLogger(__name__)

__all__ = [
    'BUCKET_COUNT',
    'is_transparent',
    'unpack_rgb',
    'pack_rgba',
    'bucket_of',
    'bucket_of_rgb',
    'buckets_of_channels',
    'stretch_bucket',
    'bucket_representatives',
    'PerceptualTable',
    'ColorMetric',
]

BUCKET_COUNT = 0x8000


# -------------------- Packed Color Helpers --------------------

def is_transparent(color: int) -> bool:
    """Alpha below 128 counts as fully transparent."""
    return (int(color) & 0x80) == 0


def unpack_rgb(color: int) -> Tuple[int, int, int]:
    color = int(color)
    return (color >> 24) & 0xFF, (color >> 16) & 0xFF, (color >> 8) & 0xFF


def pack_rgba(r: int, g: int, b: int, a: int = 255) -> int:
    return ((r & 0xFF) << 24) | ((g & 0xFF) << 16) | ((b & 0xFF) << 8) | (a & 0xFF)


def bucket_of(color: int) -> int:
    """RGB555 bucket of a packed RGBA8888 color."""
    color = int(color)
    return (color >> 17 & 0x7C00) | (color >> 14 & 0x3E0) | (color >> 11 & 0x1F)


def bucket_of_rgb(r: int, g: int, b: int) -> int:
    return (r << 7 & 0x7C00) | (g << 2 & 0x3E0) | (b >> 3)


def buckets_of_channels(r: np.ndarray, g: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Vectorized bucket_of_rgb for integer channel arrays."""
    r = np.asarray(r, dtype=np.int64)
    g = np.asarray(g, dtype=np.int64)
    b = np.asarray(b, dtype=np.int64)
    return ((r << 7) & 0x7C00) | ((g << 2) & 0x3E0) | (b >> 3)


def stretch_bucket(bucket: int) -> int:
    """
    Opaque RGBA8888 color closest to the center of a bucket: each 5-bit channel
    keeps its bits on top and repeats its 3 highest bits underneath.
    """
    r5, g5, b5 = bucket >> 10 & 31, bucket >> 5 & 31, bucket & 31
    return pack_rgba(r5 << 3 | r5 >> 2, g5 << 3 | g5 >> 2, b5 << 3 | b5 >> 2)


def bucket_representatives() -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Representative 8-bit (r, g, b) arrays for all 32768 buckets, in bucket order."""
    idx = np.arange(BUCKET_COUNT, dtype=np.int64)
    r5, g5, b5 = idx >> 10 & 31, idx >> 5 & 31, idx & 31
    return r5 << 3 | r5 >> 2, g5 << 3 | g5 >> 2, b5 << 3 | b5 >> 2


# -------------------- L*A*B* Conversion --------------------

# sRGB gamma expansion for every 8-bit channel value
_LINEAR_LUT = np.where(np.arange(256) / 255.0 > 0.04045,
                       ((np.arange(256) / 255.0 + 0.055) / 1.055) ** 2.4,
                       np.arange(256) / 255.0 / 12.92)


def _lab_nonlinear(t):
    return np.where(t > 0.008856, np.cbrt(t), 7.787037037037037 * t + 0.13793103448275862)


def _linear_to_lab(r, g, b):
    """Linear RGB (scalars or arrays in [0,1]) to CIE L*A*B* against a D65-ish white."""
    x = (r * 0.4124 + g * 0.3576 + b * 0.1805) / 0.950489
    y = (r * 0.2126 + g * 0.7152 + b * 0.0722)
    z = (r * 0.0193 + g * 0.1192 + b * 0.9505) / 1.088840
    x, y, z = _lab_nonlinear(x), _lab_nonlinear(y), _lab_nonlinear(z)
    return 116.0 * y - 16.0, 500.0 * (x - y), 200.0 * (y - z)


def _rough_lab(r, g, b):
    """Cheaper, lightness-heavy Lab-like space; no white normalization and no linear toe."""
    r = ((np.asarray(r, dtype=np.float64) / 255.0 + 0.055) / 1.055) ** 2.4
    g = ((np.asarray(g, dtype=np.float64) / 255.0 + 0.055) / 1.055) ** 2.4
    b = ((np.asarray(b, dtype=np.float64) / 255.0 + 0.055) / 1.055) ** 2.4
    x = (r * 0.4124 + g * 0.3576 + b * 0.1805) ** 0.3125
    y = (r * 0.2126 + g * 0.7152 + b * 0.0722) ** 0.3125
    z = (r * 0.0193 + g * 0.1192 + b * 0.9505) ** 0.3125
    return 100.0 * y, 500.0 * (x - y), 200.0 * (y - z)


# -------------------- Perceptual Table --------------------

class PerceptualTable:
    """
    L*A*B* coordinates for every RGB555 bucket.

    Built once per process on first use and shared by everything that needs it.
    Use PerceptualTable.get() rather than constructing it directly; the arrays
    are read-only.
    """

    _instance = None
    _lock = threading.Lock()

    def __init__(self):
        levels = np.arange(32) / 31.0
        linear = np.where(levels > 0.04045, ((levels + 0.055) / 1.055) ** 2.4, levels / 12.92)
        idx = np.arange(BUCKET_COUNT)
        lightness, chroma_a, chroma_b = _linear_to_lab(linear[idx >> 10 & 31],
                                                       linear[idx >> 5 & 31],
                                                       linear[idx & 31])
        self.lightness = np.ascontiguousarray(lightness, dtype=np.float64)
        self.chroma_a = np.ascontiguousarray(chroma_a, dtype=np.float64)
        self.chroma_b = np.ascontiguousarray(chroma_b, dtype=np.float64)
        for arr in (self.lightness, self.chroma_a, self.chroma_b):
            arr.setflags(write=False)

    @classmethod
    def get(cls) -> 'PerceptualTable':
        instance = cls._instance
        if instance is None:
            with cls._lock:
                instance = cls._instance
                if instance is None:
                    logger.debug("Building perceptual table for %d buckets", BUCKET_COUNT)
                    instance = cls()
                    cls._instance = instance
        return instance


# -------------------- Distance Functions --------------------
# Each takes integer channels (scalars or broadcastable int64 arrays).

def _weighted_rgb(r1, g1, b1, r2, g2, b2):
    rmean = r1 + r2
    r, g, b = r1 - r2, g1 - g2, b1 - b2
    y = np.maximum(np.maximum(r1, g1), b1) - np.maximum(np.maximum(r2, g2), b2)
    return (((1024 + rmean) * r * r) >> 7) + g * g * 12 + (((1534 - rmean) * b * b) >> 8) + y * y * 14


def _lab_euclidean(r1, g1, b1, r2, g2, b2):
    l1, a1, bb1 = _linear_to_lab(_LINEAR_LUT[r1], _LINEAR_LUT[g1], _LINEAR_LUT[b1])
    l2, a2, bb2 = _linear_to_lab(_LINEAR_LUT[r2], _LINEAR_LUT[g2], _LINEAR_LUT[b2])
    dl, da, db = l1 - l2, a1 - a2, bb1 - bb2
    return dl * dl * 11.0 + da * da * 1.6 + db * db


def _lab_rough(r1, g1, b1, r2, g2, b2):
    l1, a1, bb1 = _rough_lab(r1, g1, b1)
    l2, a2, bb2 = _rough_lab(r2, g2, b2)
    dl, da, db = l1 - l2, a1 - a2, bb1 - bb2
    return dl * dl * np.abs(dl) * 350.0 + da * da * 25.0 + db * db * 15.0


def _lab_quick(r1, g1, b1, r2, g2, b2):
    table = PerceptualTable.get()
    i1 = buckets_of_channels(r1, g1, b1)
    i2 = buckets_of_channels(r2, g2, b2)
    dl = table.lightness[i1] - table.lightness[i2]
    da = table.chroma_a[i1] - table.chroma_a[i2]
    db = table.chroma_b[i1] - table.chroma_b[i2]
    return dl * dl * 7.0 + da * da + db * db


def _power_rgb(r1, g1, b1, r2, g2, b2):
    dr = np.abs(np.asarray(r1 - r2, dtype=np.float64))
    dg = np.abs(np.asarray(g1 - g2, dtype=np.float64))
    db = np.abs(np.asarray(b1 - b2, dtype=np.float64))
    return np.sqrt(dr ** 3.7 + dg ** 4.0 + db ** 3.1)


# -------------------- Color Metric --------------------

class ColorMetric(Enum):
    """
    Interchangeable color difference functions. Results of 250 or more usually
    mean a just-noticeable difference; 500 or more an obvious one.
    """
    WEIGHTED_RGB = "weighted_rgb"
    LAB_EUCLIDEAN = "lab_euclidean"
    LAB_ROUGH = "lab_rough"
    LAB_QUICK = "lab_quick"
    POWER_RGB = "power_rgb"

    @classmethod
    def from_name(cls, name) -> 'ColorMetric':
        if isinstance(name, ColorMetric):
            return name
        try:
            return cls(str(name).lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown color metric '{name}'. Valid metrics: {valid}")

    def _function(self):
        return _METRIC_FUNCTIONS[self]

    def distance_channels(self, r1: int, g1: int, b1: int, r2: int, g2: int, b2: int) -> float:
        return float(self._function()(np.int64(r1), np.int64(g1), np.int64(b1),
                                      np.int64(r2), np.int64(g2), np.int64(b2)))

    def distance(self, color1: int, color2: int) -> float:
        """Difference between two packed colors; infinite if exactly one is transparent."""
        if (int(color1) ^ int(color2)) & 0x80:
            return math.inf
        return self.distance_channels(*unpack_rgb(color1), *unpack_rgb(color2))

    def distance_rgb(self, color1: int, r2: int, g2: int, b2: int) -> float:
        """Difference between a packed color and an always-opaque channel triple."""
        if is_transparent(color1):
            return math.inf
        return self.distance_channels(*unpack_rgb(color1), r2, g2, b2)

    def distance_many(self, r1: int, g1: int, b1: int,
                      reds: np.ndarray, greens: np.ndarray, blues: np.ndarray) -> np.ndarray:
        """
        Vectorized distance_channels from one opaque color to many channel triples.
        Used to build nearest-color tables, where it runs once per palette entry
        against all 32768 buckets.
        """
        reds = np.asarray(reds, dtype=np.int64)
        greens = np.asarray(greens, dtype=np.int64)
        blues = np.asarray(blues, dtype=np.int64)
        result = self._function()(np.int64(r1), np.int64(g1), np.int64(b1), reds, greens, blues)
        return np.asarray(result, dtype=np.float64)


_METRIC_FUNCTIONS = {
    ColorMetric.WEIGHTED_RGB: _weighted_rgb,
    ColorMetric.LAB_EUCLIDEAN: _lab_euclidean,
    ColorMetric.LAB_ROUGH: _lab_rough,
    ColorMetric.LAB_QUICK: _lab_quick,
    ColorMetric.POWER_RGB: _power_rgb,
}
