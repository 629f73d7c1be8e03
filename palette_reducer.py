"""
Palette construction and nearest-color lookup.

A PaletteReducer holds up to 256 packed RGBA8888 colors plus a 32768-entry
table that maps every RGB555 bucket to the index of the closest palette entry.
The table is built once per palette (exact list, image analysis or a preloaded
byte dump) and is read-only afterwards, so every dithering pass is a sequence
of O(1) lookups.
"""

import logging
import math
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Union

import numpy as np

from color_metrics import (
    BUCKET_COUNT,
    ColorMetric,
    bucket_of,
    bucket_representatives,
    unpack_rgb,
)

logger = logging.getLogger(__name__)

__all__ = ['AURORA', 'PaletteReducer', 'build_mapping', 'hue_shift_color']

# DawnBringer's Aurora, 255 hand-picked colors plus transparent at index 0.
AURORA = np.array([
    0x00000000, 0x010101FF, 0x131313FF, 0x252525FF, 0x373737FF, 0x494949FF, 0x5B5B5BFF, 0x6E6E6EFF,
    0x808080FF, 0x929292FF, 0xA4A4A4FF, 0xB6B6B6FF, 0xC9C9C9FF, 0xDBDBDBFF, 0xEDEDEDFF, 0xFFFFFFFF,
    0x007F7FFF, 0x3FBFBFFF, 0x00FFFFFF, 0xBFFFFFFF, 0x8181FFFF, 0x0000FFFF, 0x3F3FBFFF, 0x00007FFF,
    0x0F0F50FF, 0x7F007FFF, 0xBF3FBFFF, 0xF500F5FF, 0xFD81FFFF, 0xFFC0CBFF, 0xFF8181FF, 0xFF0000FF,
    0xBF3F3FFF, 0x7F0000FF, 0x551414FF, 0x7F3F00FF, 0xBF7F3FFF, 0xFF7F00FF, 0xFFBF81FF, 0xFFFFBFFF,
    0xFFFF00FF, 0xBFBF3FFF, 0x7F7F00FF, 0x007F00FF, 0x3FBF3FFF, 0x00FF00FF, 0xAFFFAFFF, 0xBCAFC0FF,
    0xCBAA89FF, 0xA6A090FF, 0x7E9494FF, 0x6E8287FF, 0x7E6E60FF, 0xA0695FFF, 0xC07872FF, 0xD08A74FF,
    0xE19B7DFF, 0xEBAA8CFF, 0xF5B99BFF, 0xF6C8AFFF, 0xF5E1D2FF, 0x573B3BFF, 0x73413CFF, 0x8E5555FF,
    0xAB7373FF, 0xC78F8FFF, 0xE3ABABFF, 0xF8D2DAFF, 0xE3C7ABFF, 0xC49E73FF, 0x8F7357FF, 0x73573BFF,
    0x3B2D1FFF, 0x414123FF, 0x73733BFF, 0x8F8F57FF, 0xA2A255FF, 0xB5B572FF, 0xC7C78FFF, 0xDADAABFF,
    0xEDEDC7FF, 0xC7E3ABFF, 0xABC78FFF, 0x8EBE55FF, 0x738F57FF, 0x587D3EFF, 0x465032FF, 0x191E0FFF,
    0x235037FF, 0x3B573BFF, 0x506450FF, 0x3B7349FF, 0x578F57FF, 0x73AB73FF, 0x64C082FF, 0x8FC78FFF,
    0xA2D8A2FF, 0xE1F8FAFF, 0xB4EECAFF, 0xABE3C5FF, 0x87B48EFF, 0x507D5FFF, 0x0F6946FF, 0x1E2D23FF,
    0x234146FF, 0x3B7373FF, 0x64ABABFF, 0x8FC7C7FF, 0xABE3E3FF, 0xC7F1F1FF, 0xBED2F0FF, 0xABC7E3FF,
    0xA8B9DCFF, 0x8FABC7FF, 0x578FC7FF, 0x57738FFF, 0x3B5773FF, 0x0F192DFF, 0x1F1F3BFF, 0x3B3B57FF,
    0x494973FF, 0x57578FFF, 0x736EAAFF, 0x7676CAFF, 0x8F8FC7FF, 0xABABE3FF, 0xD0DAF8FF, 0xE3E3FFFF,
    0xAB8FC7FF, 0x8F57C7FF, 0x73578FFF, 0x573B73FF, 0x3C233CFF, 0x463246FF, 0x724072FF, 0x8F578FFF,
    0xAB57ABFF, 0xAB73ABFF, 0xEBACE1FF, 0xFFDCF5FF, 0xE3C7E3FF, 0xE1B9D2FF, 0xD7A0BEFF, 0xC78FB9FF,
    0xC87DA0FF, 0xC35A91FF, 0x4B2837FF, 0x321623FF, 0x280A1EFF, 0x401811FF, 0x621800FF, 0xA5140AFF,
    0xDA2010FF, 0xD5524AFF, 0xFF3C0AFF, 0xF55A32FF, 0xFF6262FF, 0xF6BD31FF, 0xFFA53CFF, 0xD79B0FFF,
    0xDA6E0AFF, 0xB45A00FF, 0xA04B05FF, 0x5F3214FF, 0x53500AFF, 0x626200FF, 0x8C805AFF, 0xAC9400FF,
    0xB1B10AFF, 0xE6D55AFF, 0xFFD510FF, 0xFFEA4AFF, 0xC8FF41FF, 0x9BF046FF, 0x96DC19FF, 0x73C805FF,
    0x6AA805FF, 0x3C6E14FF, 0x283405FF, 0x204608FF, 0x0C5C0CFF, 0x149605FF, 0x0AD70AFF, 0x14E60AFF,
    0x7DFF73FF, 0x4BF05AFF, 0x00C514FF, 0x05B450FF, 0x1C8C4EFF, 0x123832FF, 0x129880FF, 0x06C491FF,
    0x00DE6AFF, 0x2DEBA8FF, 0x3CFEA5FF, 0x6AFFCDFF, 0x91EBFFFF, 0x55E6FFFF, 0x7DD7F0FF, 0x08DED5FF,
    0x109CDEFF, 0x055A5CFF, 0x162C52FF, 0x0F377DFF, 0x004A9CFF, 0x326496FF, 0x0052F6FF, 0x186ABDFF,
    0x2378DCFF, 0x699DC3FF, 0x4AA4FFFF, 0x90B0FFFF, 0x5AC5FFFF, 0xBEB9FAFF, 0x00BFFFFF, 0x007FFFFF,
    0x4B7DC8FF, 0x786EF0FF, 0x4A5AFFFF, 0x6241F6FF, 0x3C3CF5FF, 0x101CDAFF, 0x0010BDFF, 0x231094FF,
    0x0C2148FF, 0x5010B0FF, 0x6010D0FF, 0x8732D2FF, 0x9C41FFFF, 0x7F00FFFF, 0xBD62FFFF, 0xB991FFFF,
    0xD7A5FFFF, 0xD7C3FAFF, 0xF8C6FCFF, 0xE673FFFF, 0xFF52FFFF, 0xDA20E0FF, 0xBD29FFFF, 0xBD10C5FF,
    0x8C14BEFF, 0x5A187BFF, 0x641464FF, 0x410062FF, 0x320A46FF, 0x551937FF, 0xA01982FF, 0xC80078FF,
    0xFF50BFFF, 0xFF6AC5FF, 0xFAA0B9FF, 0xFC3A8CFF, 0xE61E78FF, 0xBD1039FF, 0x98344DFF, 0x911437FF,
], dtype=np.uint32)

_default_mapping = None
_default_lock = threading.Lock()


# -------------------- Table Construction --------------------

def build_mapping(palette: np.ndarray, count: int,
                  metric: ColorMetric = ColorMetric.LAB_QUICK) -> np.ndarray:
    """
    Build the bucket -> palette index table for the first `count` entries.

    Each opaque entry claims its own bucket (the first entry to claim a bucket
    keeps it). Every other bucket gets the closest entry that holds a claim,
    measured to the bucket's representative color; ties keep the lowest index.
    Entries that lost their bucket are never targets, so reducing a reduced
    color always gives the same color back. Transparent entries are never
    targets either.
    """
    mapping = np.zeros(BUCKET_COUNT, dtype=np.uint8)
    assigned = np.zeros(BUCKET_COUNT, dtype=bool)
    claimants = []

    for i in range(count):
        if not int(palette[i]) & 0x80:
            continue
        b = bucket_of(palette[i])
        if not assigned[b]:
            mapping[b] = i
            assigned[b] = True
            claimants.append(i)

    todo = np.flatnonzero(~assigned)
    if len(todo) == 0 or not claimants:
        return mapping

    reds, greens, blues = (channel[todo] for channel in bucket_representatives())
    best_dist = np.full(len(todo), np.inf)
    best_idx = np.zeros(len(todo), dtype=np.uint8)
    for i in claimants:
        dist = metric.distance_many(*unpack_rgb(palette[i]), reds, greens, blues)
        better = dist < best_dist
        best_dist[better] = dist[better]
        best_idx[better] = i
    mapping[todo] = best_idx
    return mapping


def _aurora_mapping() -> np.ndarray:
    global _default_mapping
    if _default_mapping is None:
        with _default_lock:
            if _default_mapping is None:
                logger.debug("Building nearest-color table for the default palette")
                mapping = build_mapping(AURORA, len(AURORA), ColorMetric.LAB_QUICK)
                mapping.setflags(write=False)
                _default_mapping = mapping
    return _default_mapping


def hue_shift_color(rgba: int) -> int:
    """Push a color's hue warmer in the highlights and cooler in the shadows, keeping alpha."""
    rgba = int(rgba)
    a = rgba & 0xFF
    r, g, b = (c / 255.0 for c in unpack_rgb(rgba))
    luma = (r * 0.375 + g * 0.5 + b * 0.125) ** 1.1875
    adj = math.sin((luma - 0.5) * abs(luma - 0.5) * 13.5) * 0.09
    warm = adj + r - b
    mild = 0.5 * (adj + g - b)

    def _clamp(v):
        return min(max(int(v * 256.0), 0), 255)

    return (_clamp(luma + 0.625 * warm - mild) << 24
            | _clamp(luma - 0.375 * warm + mild) << 16
            | _clamp(luma - 0.375 * warm - mild) << 8
            | a)


# -------------------- Palette Reducer --------------------

class PaletteReducer:
    """
    A palette of at most 256 colors and its nearest-color table.

    Slot 0 holds the transparent sentinel 0 whenever the palette reserves it;
    slots at or past color_count are never consulted.
    """

    def __init__(self,
                 colors: Optional[Iterable[int]] = None,
                 metric: ColorMetric = ColorMetric.LAB_QUICK):
        self._reset(metric)
        if colors is None:
            self._use_default()
        else:
            self.exact(colors)

    def _reset(self, metric):
        self.palette = np.zeros(256, dtype=np.uint32)
        self.mapping = np.zeros(BUCKET_COUNT, dtype=np.uint8)
        self.color_count = 0
        self.population_bias = 0.5
        self.metric = ColorMetric.from_name(metric)

    @classmethod
    def _blank(cls, metric) -> 'PaletteReducer':
        reducer = cls.__new__(cls)
        reducer._reset(metric)
        return reducer

    @classmethod
    def from_colors(cls, colors: Iterable[int], limit: int = 256,
                    metric: ColorMetric = ColorMetric.LAB_QUICK) -> 'PaletteReducer':
        return cls._blank(metric).exact(colors, limit)

    @classmethod
    def from_image(cls, pixels: np.ndarray, threshold: float = 400, limit: int = 256,
                   metric: ColorMetric = ColorMetric.LAB_QUICK) -> 'PaletteReducer':
        return cls._blank(metric).analyze(pixels, threshold, limit)

    # ----- construction -----

    def _use_default(self):
        self.palette = AURORA.copy()
        self.mapping = _aurora_mapping()
        self._set_count(len(AURORA))

    def _set_count(self, count: int):
        self.color_count = count
        self.population_bias = math.exp(-1.375 / count) if count > 0 else 0.5

    def _load_colors(self, colors: List[int], count: int):
        palette = np.zeros(256, dtype=np.uint32)
        for i in range(count):
            color = int(colors[i]) & 0xFFFFFFFF
            # Mostly-transparent entries collapse to the sentinel
            palette[i] = color if color & 0x80 else 0
        return palette

    @staticmethod
    def _usable(palette: np.ndarray, count: int) -> bool:
        """At least two opaque entries among the first `count`."""
        return int(np.count_nonzero(palette[:count] & 0x80)) >= 2

    def exact(self, colors: Optional[Iterable[int]], limit: int = 256,
              metric: Optional[Union[ColorMetric, str]] = None):
        """
        Use `colors` (packed RGBA8888, at most 256 are kept) as the palette verbatim.

        None, fewer than two opaque colors among those kept, or a limit below
        two selects the default Aurora palette instead.
        """
        metric = self.metric if metric is None else ColorMetric.from_name(metric)
        colors = None if colors is None else [int(c) for c in colors]
        count = 0 if colors is None else min(256, limit, len(colors))
        palette = None if count < 2 else self._load_colors(colors, count)
        if palette is None or not self._usable(palette, count):
            logger.debug("Degenerate palette input, using the default palette")
            self._use_default()
            return self

        mapping = build_mapping(palette, count, metric)
        self.palette, self.mapping, self.metric = palette, mapping, metric
        self._set_count(count)
        logger.debug("Built exact palette with %d colors using %s", count, metric.value)
        return self

    def analyze(self, pixels: np.ndarray, threshold: float = 400, limit: int = 256,
                metric: Optional[Union[ColorMetric, str]] = None):
        """
        Pick a palette from the most frequent colors of a packed RGBA8888 raster.

        Colors are first snapped to their bucket's representative color. When
        they all fit under `limit` every one is used; otherwise candidates are
        taken in order of descending frequency and kept only if they are at
        least `threshold` away from every color already kept.
        """
        metric = self.metric if metric is None else ColorMetric.from_name(metric)
        flat = np.asarray(pixels, dtype=np.uint32).ravel()
        opaque = (flat & 0x80) != 0
        has_transparent = int(not opaque.all())
        snapped = flat[opaque] & np.uint32(0xF8F8F800)
        snapped = snapped | ((snapped >> 5) & np.uint32(0x07070700)) | np.uint32(0xFF)

        if len(snapped) == 0 or limit < 2:
            logger.debug("Nothing to analyze, using the default palette")
            self._use_default()
            return self

        limit = min(limit, 256)
        unique, first_seen, counts = np.unique(snapped, return_index=True, return_counts=True)
        ranked = unique[np.lexsort((first_seen, -counts))]

        palette = np.zeros(256, dtype=np.uint32)
        if len(ranked) + has_transparent <= limit:
            palette[has_transparent:has_transparent + len(ranked)] = ranked
            count = has_transparent + len(ranked)
        else:
            accepted_r, accepted_g, accepted_b = [], [], []
            count = 1
            for color in ranked:
                if count >= limit:
                    break
                r, g, b = unpack_rgb(color)
                if accepted_r:
                    dist = metric.distance_many(r, g, b, accepted_r, accepted_g, accepted_b)
                    if dist.min() < threshold:
                        continue
                palette[count] = color
                accepted_r.append(r)
                accepted_g.append(g)
                accepted_b.append(b)
                count += 1

        mapping = build_mapping(palette, count, metric)
        self.palette, self.mapping, self.metric = palette, mapping, metric
        self._set_count(count)
        logger.debug("Analyzed %d distinct colors into a palette of %d (threshold %s)",
                     len(ranked), count, threshold)
        return self

    def preload(self, colors: Iterable[int], table: Union[bytes, bytearray, np.ndarray]):
        """
        Install a previously serialized nearest-color table for `colors`
        instead of rebuilding it. The table must be the 32768 bytes produced
        by mapping_bytes() for the same colors. Colors with fewer than two
        opaque entries select the default palette and its own table.
        """
        colors = [int(c) for c in colors]
        raw = np.frombuffer(bytes(table), dtype=np.uint8)
        if raw.size != BUCKET_COUNT:
            raise ValueError(f"Preload table must be {BUCKET_COUNT} bytes, got {raw.size}")
        count = min(256, len(colors))
        palette = self._load_colors(colors, count)
        if not self._usable(palette, count):
            logger.debug("Degenerate preload palette, using the default palette")
            self._use_default()
            return self
        self.palette = palette
        self.mapping = raw.copy()
        self._set_count(count)
        return self

    # ----- serialization -----

    def mapping_bytes(self) -> bytes:
        return self.mapping.tobytes()

    def save_preload(self, path: Union[str, Path]):
        Path(path).write_bytes(self.mapping_bytes())

    @classmethod
    def load_preload(cls, path: Union[str, Path], colors: Iterable[int],
                     metric: ColorMetric = ColorMetric.LAB_QUICK) -> 'PaletteReducer':
        return cls._blank(metric).preload(colors, Path(path).read_bytes())

    # ----- lookup -----

    @property
    def has_transparent(self) -> bool:
        return int(self.palette[0]) == 0

    def colors(self) -> List[int]:
        return [int(c) for c in self.palette[:self.color_count]]

    def reduce_index(self, color: int) -> int:
        """Palette index for a packed color, or 0 if the color is mostly transparent."""
        color = int(color)
        if (color & 0x80) == 0:
            return 0
        return int(self.mapping[bucket_of(color)])

    def reduce_single(self, color: int) -> int:
        """Closest palette color for a packed color, or 0 if the color is mostly transparent."""
        color = int(color)
        if (color & 0x80) == 0:
            return 0
        return int(self.palette[self.mapping[bucket_of(color)]])

    def random_color_index(self, rng: Optional[np.random.Generator] = None) -> int:
        """
        Random palette index, weighted toward colors that cover more of the
        bucket space (the ones with few similar neighbors in the palette).
        """
        rng = rng or np.random.default_rng()
        return int(self.mapping[int(rng.integers(BUCKET_COUNT))])

    def random_color(self, rng: Optional[np.random.Generator] = None) -> int:
        return int(self.palette[self.random_color_index(rng)])

    def hue_shift(self):
        """Hue-shift every opaque palette entry in place; the table is left as is."""
        for i in range(self.color_count):
            if int(self.palette[i]) & 0x80:
                self.palette[i] = hue_shift_color(self.palette[i])
        return self
