"""
A Python library of palette-reduction dithering strategies.

Every strategy works on a packed RGBA8888 raster (numpy uint32, shape (h, w))
and a PaletteReducer, and overwrites the raster in place with palette colors.
ImageDitherer wraps the whole thing for PIL images.
"""

import logging
import math
import numpy as np
from enum import Enum
from typing import List, Optional, Tuple
from PIL import Image
from scipy.ndimage import gaussian_filter
from scipy.special import ndtri

from color_metrics import ColorMetric, PerceptualTable, buckets_of_channels
from palette_reducer import PaletteReducer
from utils import image_to_packed, packed_to_image

logger = logging.getLogger(__name__)

# -------------------- Enumerations --------------------

class DitherMode(Enum):
    SOLID = "solid"
    FLOYD_STEINBERG = "floyd_steinberg"
    BURKES = "burkes"
    SIERRA_LITE = "sierra_lite"
    NOISE = "noise"
    KNOLL = "knoll"
    KNOLL_ROBERTS = "knoll_roberts"
    TRUE_BLUE = "true_blue"
    BLUISH = "bluish"
    ROBERTS = "roberts"
    SCATTER = "scatter"
    CHAOTIC_NOISE = "chaotic_noise"


# -------------------- Raster Helpers --------------------

def _check_raster(pixels: np.ndarray) -> Tuple[int, int]:
    if not isinstance(pixels, np.ndarray) or pixels.dtype != np.uint32 or pixels.ndim != 2:
        raise TypeError("pixels must be a 2-D numpy array of packed uint32 RGBA8888 colors")
    return pixels.shape


def _split_channels(pixels: np.ndarray):
    p = pixels.astype(np.int64)
    return (p >> 24) & 0xFF, (p >> 16) & 0xFF, (p >> 8) & 0xFF


def _lookup(reducer: PaletteReducer, r, g, b) -> np.ndarray:
    return reducer.palette[reducer.mapping[buckets_of_channels(r, g, b)]]


def _transparent_mask(pixels: np.ndarray, reducer: PaletteReducer) -> Optional[np.ndarray]:
    """Pixels that must come out as the transparent sentinel, or None."""
    if not reducer.has_transparent:
        return None
    return (pixels & np.uint32(0x80)) == 0


def palette_indices(pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
    """
    Per-pixel palette index of an already reduced raster, for indexed encoders.
    Colors that are not in the palette fall back to their nearest entry.
    """
    _check_raster(pixels)
    lookup = {}
    for i, color in enumerate(reducer.colors()):
        lookup.setdefault(color, i)
    unique, inverse = np.unique(pixels, return_inverse=True)
    idx = np.array([lookup.get(int(c), reducer.reduce_index(c)) for c in unique], dtype=np.uint8)
    return idx[inverse].reshape(pixels.shape)


# -------------------- Base Classes for Dithering Strategies --------------------

class BaseDitherStrategy:
    """
    Base class for dithering strategies.
    Each strategy implements .dither(pixels, reducer), which overwrites the
    packed raster with colors from the reducer's palette and returns it.
    """

    @staticmethod
    def get_parameter_info():
        return {
            'strength': {
                'type': 'float',
                'default': 1.0,
                'min': 0.0,
                'max': 2.0,
                'step': 0.05,
                'label': 'Dither Strength',
                'description': 'Scales how much error or noise is applied (0 = no dithering)'
            }
        }

    def __init__(self, strength: float = 1.0):
        self.strength = max(0.0, float(strength))

    def get_current_parameters(self):
        """Returns current parameter values."""
        return {'strength': self.strength}

    def dither(self, pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
        raise NotImplementedError


class SolidDitherStrategy(BaseDitherStrategy):
    """
    No dithering at all; every pixel becomes its nearest palette color.
    """

    @staticmethod
    def get_parameter_info():
        return {}

    def get_current_parameters(self):
        return {}

    def dither(self, pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
        h, w = _check_raster(pixels)
        if h == 0 or w == 0:
            return pixels
        out = _lookup(reducer, *_split_channels(pixels))
        mask = _transparent_mask(pixels, reducer)
        if mask is not None:
            out[mask] = 0
        pixels[...] = out
        return pixels


# -------------------- Error Diffusion --------------------

class DitherState:
    """
    Per-channel error for the current and next row. Owned by one strategy
    instance; grows to the widest image seen and is zeroed, not reallocated,
    for each new image.
    """

    def __init__(self):
        self.capacity = 0
        self.current = np.zeros((3, 0), dtype=np.float64)
        self.next = np.zeros((3, 0), dtype=np.float64)

    def prepare(self, width: int):
        if width > self.capacity:
            self.current = np.zeros((3, width), dtype=np.float64)
            self.next = np.zeros((3, width), dtype=np.float64)
            self.capacity = width
        else:
            self.current[:, :width] = 0.0
            self.next[:, :width] = 0.0

    def advance(self, width: int):
        """Move to the next row: its accumulated error becomes current."""
        self.current, self.next = self.next, self.current
        self.next[:, :width] = 0.0


class ErrorDiffusionDitherStrategy(BaseDitherStrategy):
    """
    Generic error diffusion. KERNEL lists (dx, dy, weight) with dy 0 for the
    current row and 1 for the next one; weights sum to 1 and are scaled by
    strength. Weights that fall outside the image are dropped.
    """

    KERNEL: List[Tuple[int, int, float]] = []

    def __init__(self, strength: float = 1.0):
        super().__init__(strength)
        self.state = DitherState()

    def _begin(self):
        """Hook called once per image before the scan."""

    def _weights(self, color: int) -> List[Tuple[int, int, float]]:
        return self.KERNEL

    def dither(self, pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
        h, w = _check_raster(pixels)
        if h == 0 or w == 0:
            return pixels

        palette = [int(c) for c in reducer.palette]
        mapping = reducer.mapping.tobytes()
        reserve = reducer.has_transparent
        strength = self.strength
        state = self.state
        state.prepare(w)
        self._begin()

        rows = pixels.tolist()
        for y in range(h):
            if y > 0:
                state.advance(w)
            cur_r, cur_g, cur_b = state.current
            nxt_r, nxt_g, nxt_b = state.next
            has_next = y + 1 < h
            row = rows[y]
            for x in range(w):
                color = row[x]
                if reserve and not color & 0x80:
                    row[x] = 0
                    continue
                rr = min(max(int((color >> 24) + cur_r[x] + 0.5), 0), 255)
                gg = min(max(int((color >> 16 & 0xFF) + cur_g[x] + 0.5), 0), 255)
                bb = min(max(int((color >> 8 & 0xFF) + cur_b[x] + 0.5), 0), 255)
                used = palette[mapping[(rr << 7 & 0x7C00) | (gg << 2 & 0x3E0) | (bb >> 3)]]
                row[x] = used
                if strength == 0.0:
                    continue
                er = (rr - (used >> 24)) * strength
                eg = (gg - (used >> 16 & 0xFF)) * strength
                eb = (bb - (used >> 8 & 0xFF)) * strength
                for dx, dy, weight in self._weights(color):
                    nx = x + dx
                    if nx < 0 or nx >= w:
                        continue
                    if dy == 0:
                        cur_r[nx] += er * weight
                        cur_g[nx] += eg * weight
                        cur_b[nx] += eb * weight
                    elif has_next:
                        nxt_r[nx] += er * weight
                        nxt_g[nx] += eg * weight
                        nxt_b[nx] += eb * weight

        pixels[...] = np.array(rows, dtype=np.uint32)
        return pixels


class FloydSteinbergDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Classic Floyd-Steinberg: 7/16 right, 3/16, 5/16 and 1/16 on the row below.
    """
    KERNEL = [(1, 0, 7 / 16), (-1, 1, 3 / 16), (0, 1, 5 / 16), (1, 1, 1 / 16)]


class BurkesDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Burkes: spreads error two pixels to each side across two rows.
    """
    KERNEL = [(1, 0, 8 / 32), (2, 0, 4 / 32),
              (-2, 1, 2 / 32), (-1, 1, 4 / 32), (0, 1, 8 / 32), (1, 1, 4 / 32), (2, 1, 2 / 32)]


class SierraLiteDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Sierra Lite: the smallest useful kernel, 2/4 right and 1/4 twice below.
    """
    KERNEL = [(1, 0, 2 / 4), (-1, 1, 1 / 4), (0, 1, 1 / 4)]


def _rotl32(value: int, shift: int) -> int:
    return ((value << shift) | (value >> (32 - shift))) & 0xFFFFFFFF


def _xi(state: int) -> float:
    """Signed 32-bit state to a value in [-0.65625, 0.65625)."""
    signed = state - 0x100000000 if state & 0x80000000 else state
    return (signed >> 9) * 1.3125 * 2.0 ** -23


class NoiseDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Floyd-Steinberg with each weight jittered by (1 +/- xi). The jitter comes
    from a running hash of the pixel colors, so identical inputs always
    dither identically, with no positional pattern.
    """

    SEED = 0xFEEDBEEF

    def __init__(self, strength: float = 1.0):
        super().__init__(strength)
        self.hash_state = self.SEED

    def _begin(self):
        self.hash_state = self.SEED

    def _weights(self, color: int) -> List[Tuple[int, int, float]]:
        state = (self.hash_state + ((((color + 0x41C64E6D) & 0xFFFFFFFF) ^ (color >> 7)))) & 0xFFFFFFFF
        state = _rotl32(state, 21)
        xi1 = _xi(state)
        state ^= (_rotl32(state, 5) + 0x9E3779B9) & 0xFFFFFFFF
        xi2 = _xi(state)
        self.hash_state = state
        return [(1, 0, 7 / 16 * (1 + xi1)), (-1, 1, 3 / 16 * (1 + xi2)),
                (0, 1, 5 / 16 * (1 - xi1)), (1, 1, 1 / 16 * (1 - xi2))]


# -------------------- Pattern Dithering (Knoll) --------------------

THRESHOLD_MATRIX = np.array([
    0, 12, 3, 15,
    8, 4, 11, 7,
    2, 14, 1, 13,
    10, 6, 9, 5,
], dtype=np.int64)

# Best known 60-comparator sorting network for 16 inputs
SORT16_NETWORK = (
    (0, 1), (2, 3), (4, 5), (6, 7), (8, 9), (10, 11), (12, 13), (14, 15),
    (0, 2), (4, 6), (8, 10), (12, 14), (1, 3), (5, 7), (9, 11), (13, 15),
    (0, 4), (8, 12), (1, 5), (9, 13), (2, 6), (10, 14), (3, 7), (11, 15),
    (0, 8), (1, 9), (2, 10), (3, 11), (4, 12), (5, 13), (6, 14), (7, 15),
    (5, 10), (6, 9), (3, 12), (13, 14), (7, 11), (1, 2), (4, 8),
    (1, 4), (7, 13), (2, 8), (11, 14),
    (2, 4), (5, 6), (9, 10), (11, 13), (3, 8), (7, 12),
    (6, 8), (10, 12), (3, 5), (7, 9),
    (3, 4), (5, 6), (7, 8), (9, 10), (11, 12),
    (6, 7), (8, 9),
)


def sort16_by_lightness(candidates: np.ndarray) -> np.ndarray:
    """
    Sort packed colors along axis 0 (length 16) by perceptual lightness,
    in place, using a fixed compare-swap network.
    """
    lightness = PerceptualTable.get().lightness
    c = candidates.astype(np.int64)
    keys = lightness[(c >> 17 & 0x7C00) | (c >> 14 & 0x3E0) | (c >> 11 & 0x1F)]
    for a, b in SORT16_NETWORK:
        swap = keys[a] > keys[b]
        candidates[a], candidates[b] = (np.where(swap, candidates[b], candidates[a]),
                                        np.where(swap, candidates[a], candidates[b]))
        keys[a], keys[b] = np.where(swap, keys[b], keys[a]), np.where(swap, keys[a], keys[b])
    return candidates


class KnollDitherStrategy(BaseDitherStrategy):
    """
    Thomas Knoll's pattern dither on a 4x4 threshold matrix. For each pixel,
    16 candidates are found by repeatedly looking up the color plus the
    error accumulated so far; they are sorted by lightness and the matrix
    picks one. The residual is measured against a gamma-adjusted palette.
    """

    ERROR_SCALE = 1.0

    # Pixels handled per vectorized pass; keeps working memory independent of image size
    BLOCK_SIZE = 1 << 14

    def _matrix_index(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        return (xs & 3) | ((ys & 3) << 2)

    def dither(self, pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
        h, w = _check_raster(pixels)
        if h == 0 or w == 0:
            return pixels

        half = self.strength * 0.5
        error_mul = half * reducer.population_bias * self.ERROR_SCALE
        gamma = max(2.0 - half * 1.666, 0.01)
        pal = reducer.palette.astype(np.int64)
        gamma_rgb = tuple(np.floor(((pal >> shift & 0xFF) / 255.0) ** gamma * 255.999)
                          for shift in (24, 16, 8))

        flat = pixels.reshape(-1)
        for start in range(0, flat.size, self.BLOCK_SIZE):
            block = flat[start:start + self.BLOCK_SIZE]
            out = self._dither_block(block, start, w, reducer, error_mul, gamma_rgb)
            mask = _transparent_mask(block, reducer)
            if mask is not None:
                out[mask] = 0
            flat[start:start + self.BLOCK_SIZE] = out
        # reshape copies when the raster is not contiguous
        pixels[...] = flat.reshape(h, w)
        return pixels

    def _dither_block(self, block, start, w, reducer, error_mul, gamma_rgb):
        gamma_r, gamma_g, gamma_b = gamma_rgb
        n = block.size
        cr, cg, cb = _split_channels(block)
        er = np.zeros(n)
        eg = np.zeros(n)
        eb = np.zeros(n)
        candidates = np.empty((16, n), dtype=np.uint32)
        for i in range(16):
            rr = np.clip(np.trunc(cr + er * error_mul), 0, 255).astype(np.int64)
            gg = np.clip(np.trunc(cg + eg * error_mul), 0, 255).astype(np.int64)
            bb = np.clip(np.trunc(cb + eb * error_mul), 0, 255).astype(np.int64)
            idx = reducer.mapping[buckets_of_channels(rr, gg, bb)]
            candidates[i] = reducer.palette[idx]
            er += cr - gamma_r[idx]
            eg += cg - gamma_g[idx]
            eb += cb - gamma_b[idx]
        sort16_by_lightness(candidates)

        ys, xs = np.divmod(np.arange(start, start + n, dtype=np.int64), w)
        pick = THRESHOLD_MATRIX[self._matrix_index(xs, ys)]
        return candidates[pick, np.arange(n)]


class KnollRobertsDitherStrategy(KnollDitherStrategy):
    """
    Knoll's pattern dither with the matrix index skewed by Martin Roberts'
    low-discrepancy sequence, which breaks up the plain version's grid.
    """

    ERROR_SCALE = 0.6

    def _matrix_index(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        skew = (xs * 14.039021329973541 + ys * 0.4045084971874737).astype(np.int64) & 3
        return skew ^ ((xs & 3) | ((ys & 3) << 2))


class RobertsDitherStrategy(BaseDitherStrategy):
    """
    Additive ordered dither: one offset per pixel, from a 64-bit hash of its
    coordinates, is added to all three channels before the lookup.
    """

    def dither(self, pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
        h, w = _check_raster(pixels)
        if h == 0 or w == 0:
            return pixels
        half = self.strength * 0.5
        xs = np.arange(w, dtype=np.uint64)[None, :]
        ys = np.arange(h, dtype=np.uint64)[:, None]
        with np.errstate(over='ignore'):
            mixed = xs * np.uint64(0xC13FA9A902A6328F) + ys * np.uint64(0x91E10DA5C79E7B1D)
        adj = np.trunc((mixed.view(np.int64) >> 57) * half).astype(np.int64)
        adj ^= adj >> 31
        adj = np.trunc(adj - 32 * half).astype(np.int64)

        # Snap each channel to its bucket's representative value first
        snapped = pixels & np.uint32(0xF8F8F800)
        snapped = snapped | ((snapped >> 5) & np.uint32(0x07070700))
        r, g, b = _split_channels(snapped)
        out = _lookup(reducer, np.clip(r + adj, 0, 255), np.clip(g + adj, 0, 255), np.clip(b + adj, 0, 255))
        mask = _transparent_mask(pixels, reducer)
        if mask is not None:
            out[mask] = 0
        pixels[...] = out
        return pixels


# -------------------- Blue Noise --------------------

def generate_blue_noise(size: int = 64, seed: int = 42) -> np.ndarray:
    """
    Tileable blue-noise tile of signed byte samples in [-128, 127]: white
    noise is high-pass filtered twice on a torus, then rank-mapped so every
    value occurs equally often.
    """
    rng = np.random.default_rng(seed)
    a = rng.random((size, size))
    a = a - gaussian_filter(a, sigma=1.0, mode='wrap')
    a = a - gaussian_filter(a, sigma=1.0, mode='wrap')
    order = np.argsort(a, axis=None, kind='mergesort')
    ranks = np.empty(size * size, dtype=np.int64)
    ranks[order] = np.arange(size * size)
    return (ranks * 256 // (size * size) - 128).reshape(size, size)


class BlueNoiseDitherStrategy(BaseDitherStrategy):
    """
    Blue-noise dither without error diffusion: find the nearest color, push
    the input away from it by a noise-derived bias, and look up again.
    """

    SIZE = 64

    # In-memory cache of generated tiles, keyed by seed
    _cache = {}

    def __init__(self, strength: float = 1.0, seed: int = 42):
        super().__init__(strength)
        self.seed = int(seed)
        tile = BlueNoiseDitherStrategy._cache.get(self.seed)
        if tile is None:
            tile = generate_blue_noise(self.SIZE, self.seed)
            BlueNoiseDitherStrategy._cache[self.seed] = tile
        self.tile = tile

    def _bias(self, t: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def dither(self, pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
        h, w = _check_raster(pixels)
        if h == 0 or w == 0:
            return pixels
        size = self.SIZE
        noise = self.tile[np.arange(h)[:, None] % size, np.arange(w)[None, :] % size]
        adj = self._bias((noise + 0.5) / 127.5) * (0.75 * self.strength * reducer.population_bias)

        r, g, b = _split_channels(pixels)
        used = _lookup(reducer, r, g, b).astype(np.int64)
        rr = np.clip(np.trunc(r + adj * (r - (used >> 24 & 0xFF))), 0, 255).astype(np.int64)
        gg = np.clip(np.trunc(g + adj * (g - (used >> 16 & 0xFF))), 0, 255).astype(np.int64)
        bb = np.clip(np.trunc(b + adj * (b - (used >> 8 & 0xFF))), 0, 255).astype(np.int64)
        out = _lookup(reducer, rr, gg, bb)
        mask = _transparent_mask(pixels, reducer)
        if mask is not None:
            out[mask] = 0
        pixels[...] = out
        return pixels


class TrueBlueDitherStrategy(BlueNoiseDitherStrategy):
    """
    Blue noise on a fixed tile, remapped through arccos so most pixels stay
    close to their nearest color.
    """

    TILE_SEED = 123

    def __init__(self, strength: float = 1.0):
        super().__init__(strength, self.TILE_SEED)

    def get_current_parameters(self):
        return {'strength': self.strength}

    def _bias(self, t: np.ndarray) -> np.ndarray:
        return 1.0 - 2.0 * np.arccos(np.clip(t, -1.0, 1.0)) / math.pi


class BluishDitherStrategy(BlueNoiseDitherStrategy):
    """
    Blue noise remapped through a cube root; the seed picks the tile, so
    identical inputs can be given different but reproducible patterns.
    """

    @staticmethod
    def get_parameter_info():
        info = BaseDitherStrategy.get_parameter_info()
        info['seed'] = {
            'type': 'int',
            'default': 42,
            'min': 0,
            'max': 9999,
            'label': 'Random Seed',
            'description': 'Seed for noise generation (different seeds = different patterns)'
        }
        return info

    def get_current_parameters(self):
        return {'strength': self.strength, 'seed': self.seed}

    def _bias(self, t: np.ndarray) -> np.ndarray:
        return np.cbrt(t)


_MASK64 = (1 << 64) - 1


def _signed64(value: int) -> int:
    value &= _MASK64
    return value - (1 << 64) if value >> 63 else value


def _sign_extend32(color: int) -> int:
    return color | 0xFFFFFFFF00000000 if color & 0x80000000 else color


class ChaoticNoiseDitherStrategy(BlueNoiseDitherStrategy):
    """
    Blue noise (cubed) plus a white-noise term whose generator state is fed
    every color seen so far, on a checkerboard. More pixels move away from
    the Solid result than with Bluish. The blue-noise term does not scale
    with strength, so strength 0 still differs slightly from Solid.
    """

    TILE_SEED = 7
    STATE_SEED = 0xC13FA9A902A6328F

    def __init__(self, strength: float = 1.0):
        super().__init__(strength, self.TILE_SEED)

    def get_current_parameters(self):
        return {'strength': self.strength}

    def _chaos(self, snapped: np.ndarray, skip: np.ndarray) -> np.ndarray:
        """Per-pixel signed noise from a 64-bit state stepped once per dithered pixel, in scan order."""
        s = self.STATE_SEED
        result = []
        for color, skipped in zip(snapped.ravel().tolist(), skip.ravel().tolist()):
            if skipped:
                result.append(0)
                continue
            a = _signed64((s ^ 0x9E3779B97F4A7C15) * 0xC6BC279692B5CC83) >> 15
            b = _signed64(((~s & _MASK64) ^ 0xDB4F0B9175AE2165) * 0xD1B54A32D192ED03) >> 15
            s = ((s ^ _sign_extend32(color)) * 0xD1342543DE82EF95 + 0x91E10DA5C79E7B1D) & _MASK64
            result.append(a + b + (_signed64(s) >> 15))
        return np.array(result, dtype=np.float64).reshape(snapped.shape)

    def dither(self, pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
        h, w = _check_raster(pixels)
        if h == 0 or w == 0:
            return pixels
        strength = self.strength * 0.5 * reducer.population_bias * 1.5

        snapped = pixels & np.uint32(0xF8F8F880)
        mask = _transparent_mask(snapped, reducer)
        skip = mask if mask is not None else np.zeros((h, w), dtype=bool)
        snapped = snapped | ((snapped >> 5) & np.uint32(0x07070700)) | np.uint32(0xFF)

        size = self.SIZE
        ys = np.arange(h)[:, None]
        xs = np.arange(w)[None, :]
        noise = self.tile[ys % size, xs % size]
        adj = ((noise + 0.5) * 0.007843138) ** 3
        checker = ((xs + ys) & 1) - 0.5
        adj = adj + checker * 1.5 * 2.0 ** -49 * strength * self._chaos(snapped, skip)

        r, g, b = _split_channels(snapped)
        used = _lookup(reducer, r, g, b).astype(np.int64)
        rr = np.clip(np.trunc(r + adj * (r - (used >> 24 & 0xFF))), 0, 255).astype(np.int64)
        gg = np.clip(np.trunc(g + adj * (g - (used >> 16 & 0xFF))), 0, 255).astype(np.int64)
        bb = np.clip(np.trunc(b + adj * (b - (used >> 8 & 0xFF))), 0, 255).astype(np.int64)
        out = _lookup(reducer, rr, gg, bb)
        if mask is not None:
            out[mask] = 0
        pixels[...] = out
        return pixels


def blue_noise_multipliers(seed: int = 3, size: int = 64) -> np.ndarray:
    """
    Log-normal multipliers around 1.0 from a blue-noise tile: each sample is
    mapped through the inverse normal CDF, halved, and exponentiated.
    """
    tile = generate_blue_noise(size, seed)
    return np.exp(ndtri((tile + 128.5) / 256.0) * 0.5)


def _cbrt(value: float) -> float:
    return math.copysign(abs(value) ** (1.0 / 3.0), value)


class ScatterDitherStrategy(ErrorDiffusionDitherStrategy):
    """
    Floyd-Steinberg with the incoming error scaled per pixel by blue-noise
    multipliers. The outgoing error is cube-root shaped, so small residuals
    spread further than large ones.
    """

    KERNEL = [(1, 0, 7.0), (-1, 1, 3.0), (0, 1, 5.0), (1, 1, 1.0)]
    TILE_SEED = 3
    RESIDUAL_SCALE = 2.875 / 256.0

    # Multiplier tiles, keyed by seed
    _cache = {}

    def __init__(self, strength: float = 1.0):
        super().__init__(strength)
        multipliers = ScatterDitherStrategy._cache.get(self.TILE_SEED)
        if multipliers is None:
            multipliers = blue_noise_multipliers(self.TILE_SEED).tolist()
            ScatterDitherStrategy._cache[self.TILE_SEED] = multipliers
        self.multipliers = multipliers

    def dither(self, pixels: np.ndarray, reducer: PaletteReducer) -> np.ndarray:
        h, w = _check_raster(pixels)
        if h == 0 or w == 0:
            return pixels

        palette = [int(c) for c in reducer.palette]
        mapping = reducer.mapping.tobytes()
        reserve = reducer.has_transparent
        scale = self.strength * 0.5 * 3.5
        kernel = [(dx, dy, weight * scale) for dx, dy, weight in self.KERNEL]
        shape = self.RESIDUAL_SCALE
        multipliers = self.multipliers
        state = self.state
        state.prepare(w)

        rows = pixels.tolist()
        for y in range(h):
            if y > 0:
                state.advance(w)
            cur_r, cur_g, cur_b = state.current
            nxt_r, nxt_g, nxt_b = state.next
            has_next = y + 1 < h
            row = rows[y]
            tbn_row = multipliers[y & 63]
            for x in range(w):
                color = row[x]
                if reserve and not color & 0x80:
                    row[x] = 0
                    continue
                # Snap each channel to its bucket's representative value
                r = color >> 24 & 0xF8
                g = color >> 16 & 0xF8
                b = color >> 8 & 0xF8
                r |= r >> 5
                g |= g >> 5
                b |= b >> 5
                tbn = tbn_row[x & 63]
                rr = min(max(int(r + cur_r[x] * tbn + 0.5), 0), 255)
                gg = min(max(int(g + cur_g[x] * tbn + 0.5), 0), 255)
                bb = min(max(int(b + cur_b[x] * tbn + 0.5), 0), 255)
                used = palette[mapping[(rr << 7 & 0x7C00) | (gg << 2 & 0x3E0) | (bb >> 3)]]
                row[x] = used
                if scale == 0.0:
                    continue
                er = _cbrt(shape * (r - (used >> 24)))
                eg = _cbrt(shape * (g - (used >> 16 & 0xFF)))
                eb = _cbrt(shape * (b - (used >> 8 & 0xFF)))
                for dx, dy, weight in kernel:
                    nx = x + dx
                    if nx < 0 or nx >= w:
                        continue
                    if dy == 0:
                        cur_r[nx] += er * weight
                        cur_g[nx] += eg * weight
                        cur_b[nx] += eb * weight
                    elif has_next:
                        nxt_r[nx] += er * weight
                        nxt_g[nx] += eg * weight
                        nxt_b[nx] += eb * weight

        pixels[...] = np.array(rows, dtype=np.uint32)
        return pixels


# -------------------- Image Ditherer --------------------

_STRATEGIES = {
    DitherMode.SOLID: SolidDitherStrategy,
    DitherMode.FLOYD_STEINBERG: FloydSteinbergDitherStrategy,
    DitherMode.BURKES: BurkesDitherStrategy,
    DitherMode.SIERRA_LITE: SierraLiteDitherStrategy,
    DitherMode.NOISE: NoiseDitherStrategy,
    DitherMode.KNOLL: KnollDitherStrategy,
    DitherMode.KNOLL_ROBERTS: KnollRobertsDitherStrategy,
    DitherMode.TRUE_BLUE: TrueBlueDitherStrategy,
    DitherMode.BLUISH: BluishDitherStrategy,
    DitherMode.ROBERTS: RobertsDitherStrategy,
    DitherMode.SCATTER: ScatterDitherStrategy,
    DitherMode.CHAOTIC_NOISE: ChaoticNoiseDitherStrategy,
}


class ImageDitherer:
    """
    Orchestrates palette building plus dithering (using a chosen strategy).

    The palette comes from, in order of preference: an explicit reducer, an
    explicit color list, or an analysis of the first image dithered (reused
    for later images, so a batch of frames shares one palette).
    """
    def __init__(self,
                 num_colors: int = 256,
                 dither_mode: Optional[DitherMode] = DitherMode.FLOYD_STEINBERG,
                 palette: Optional[List[int]] = None,
                 metric: ColorMetric = ColorMetric.LAB_QUICK,
                 threshold: float = 400,
                 dither_params: Optional[dict] = None,
                 reducer: Optional[PaletteReducer] = None):
        self.num_colors = num_colors
        self.dither_mode = dither_mode
        self.palette = palette
        self.metric = ColorMetric.from_name(metric)
        self.threshold = threshold
        self.dither_params = dict(dither_params or {})
        self.reducer = reducer
        self._strategies = {}

    @staticmethod
    def get_mode_parameters(mode: DitherMode) -> Optional[dict]:
        """
        Get parameter metadata for a specific dithering mode.
        Returns None if the mode has no configurable parameters.
        """
        info = _STRATEGIES[mode].get_parameter_info()
        return info or None

    @staticmethod
    def mode_has_parameters(mode: DitherMode) -> bool:
        """Check if a dithering mode has configurable parameters."""
        return ImageDitherer.get_mode_parameters(mode) is not None

    def _get_dither_strategy(self, mode: DitherMode) -> BaseDitherStrategy:
        # Strategies are kept so their row buffers are reused between images
        strategy = self._strategies.get(mode)
        if strategy is not None:
            return strategy
        try:
            cls = _STRATEGIES[mode]
        except KeyError:
            raise ValueError(f"Unrecognized DitherMode: {mode}")
        params = cls.get_parameter_info()
        settings = {key: info['default'] for key, info in params.items()}
        settings.update({k: v for k, v in self.dither_params.items() if k in params})
        strategy = cls(**settings)
        self._strategies[mode] = strategy
        return strategy

    def set_dither_strength(self, strength: float):
        """Change the strength used by this ditherer, including strategies already built."""
        strength = max(0.0, float(strength))
        self.dither_params['strength'] = strength
        for strategy in self._strategies.values():
            if hasattr(strategy, 'strength'):
                strategy.strength = strength

    def get_reducer(self, pixels: Optional[np.ndarray] = None) -> PaletteReducer:
        """Return the palette reducer, building it on first use."""
        if self.reducer is None:
            if self.palette is not None:
                self.reducer = PaletteReducer.from_colors(self.palette, self.num_colors, self.metric)
            elif pixels is not None:
                self.reducer = PaletteReducer.from_image(pixels, self.threshold, self.num_colors,
                                                         self.metric)
            else:
                self.reducer = PaletteReducer(metric=self.metric)
            logger.debug("Using a palette of %d colors", self.reducer.color_count)
        return self.reducer

    def dither_pixels(self, pixels: np.ndarray) -> np.ndarray:
        """Reduce a packed RGBA8888 raster in place and return it."""
        _check_raster(pixels)
        reducer = self.get_reducer(pixels)
        if not self.dither_mode:
            self.dither_mode = DitherMode.SOLID
        strategy = self._get_dither_strategy(self.dither_mode)
        logger.debug("Dithering %dx%d raster with %s", pixels.shape[1], pixels.shape[0],
                     self.dither_mode.value)
        return strategy.dither(pixels, reducer)

    def apply_dithering(self, image: Image.Image) -> Image.Image:
        pixels = image_to_packed(image)
        self.dither_pixels(pixels)
        return packed_to_image(pixels)

    def apply_indexed(self, image: Image.Image) -> Tuple[List[int], np.ndarray]:
        """
        Dither an image and return (palette colors, per-pixel index array)
        for callers that write indexed formats.
        """
        pixels = image_to_packed(image)
        self.dither_pixels(pixels)
        return self.reducer.colors(), palette_indices(pixels, self.reducer)
