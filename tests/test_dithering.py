import sys
import tracemalloc
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from color_metrics import ColorMetric, PerceptualTable, bucket_of
from dithering_lib import (
    SORT16_NETWORK,
    THRESHOLD_MATRIX,
    BluishDitherStrategy,
    BurkesDitherStrategy,
    ChaoticNoiseDitherStrategy,
    DitherMode,
    FloydSteinbergDitherStrategy,
    ImageDitherer,
    KnollDitherStrategy,
    KnollRobertsDitherStrategy,
    ScatterDitherStrategy,
    SierraLiteDitherStrategy,
    SolidDitherStrategy,
    TrueBlueDitherStrategy,
    blue_noise_multipliers,
    generate_blue_noise,
    palette_indices,
    sort16_by_lightness,
)
from palette_reducer import PaletteReducer
from utils import packed_to_image

BLACK = 0x000000FF
WHITE = 0xFFFFFFFF


def _random_raster(h=12, w=17, seed=0, transparent_fraction=0.0):
    rng = np.random.default_rng(seed)
    rgb = rng.integers(0, 1 << 24, size=(h, w), dtype=np.int64)
    alpha = np.where(rng.random((h, w)) < transparent_fraction, 0x00, 0xFF)
    return ((rgb << 8) | alpha).astype(np.uint32)


def _dither(mode, pixels, reducer, **params):
    ditherer = ImageDitherer(dither_mode=mode, dither_params=params, reducer=reducer)
    return ditherer.dither_pixels(pixels.copy())


def test_threshold_matrix_is_a_permutation():
    assert sorted(THRESHOLD_MATRIX.tolist()) == list(range(16))


def test_sorting_network_sorts_by_lightness():
    assert len(SORT16_NETWORK) == 60
    candidates = _random_raster(16, 40, seed=5)
    sort16_by_lightness(candidates)
    lightness = PerceptualTable.get().lightness
    keys = np.vectorize(lambda c: lightness[bucket_of(c)])(candidates)
    assert np.all(np.diff(keys, axis=0) >= 0)


@pytest.mark.parametrize("strategy", [FloydSteinbergDitherStrategy, BurkesDitherStrategy,
                                      SierraLiteDitherStrategy])
def test_kernel_weights_sum_to_one(strategy):
    assert sum(weight for _, _, weight in strategy.KERNEL) == pytest.approx(1.0)
    assert all(dy in (0, 1) for _, dy, _ in strategy.KERNEL)


def test_solid_matches_single_lookups():
    reducer = PaletteReducer()
    pixels = _random_raster(seed=1)
    out = SolidDitherStrategy().dither(pixels.copy(), reducer)
    expected = np.vectorize(reducer.reduce_single, otypes=[np.uint32])(pixels)
    assert np.array_equal(out, expected)


# Chaotic noise keeps its unscaled blue-noise term at strength 0
@pytest.mark.parametrize("mode", [m for m in DitherMode
                                  if m not in (DitherMode.SOLID, DitherMode.CHAOTIC_NOISE)])
def test_zero_strength_matches_solid(mode):
    reducer = PaletteReducer()
    pixels = _random_raster(seed=2)
    solid = _dither(DitherMode.SOLID, pixels, reducer)
    assert np.array_equal(_dither(mode, pixels, reducer, strength=0.0), solid)


@pytest.mark.parametrize("mode", list(DitherMode))
def test_transparent_pixels_stay_transparent(mode):
    reducer = PaletteReducer()
    pixels = _random_raster(seed=3, transparent_fraction=0.3)
    out = _dither(mode, pixels, reducer, strength=1.5)
    transparent = (pixels & 0x80) == 0
    assert transparent.any()
    assert np.all(out[transparent] == 0)
    assert np.all(out[~transparent] & 0x80)


@pytest.mark.parametrize("mode", list(DitherMode))
def test_output_only_uses_palette_colors(mode):
    reducer = PaletteReducer([0, BLACK, WHITE, 0xFF0000FF, 0x0000FFFF])
    pixels = _random_raster(seed=4)
    out = _dither(mode, pixels, reducer)
    assert set(np.unique(out).tolist()) <= set(reducer.colors())


@pytest.mark.parametrize("mode", list(DitherMode))
def test_empty_raster_is_returned_untouched(mode):
    pixels = np.zeros((0, 7), dtype=np.uint32)
    out = _dither(mode, pixels, PaletteReducer())
    assert out.shape == (0, 7)


def test_rejects_non_raster_input():
    ditherer = ImageDitherer(dither_mode=DitherMode.SOLID)
    with pytest.raises(TypeError):
        ditherer.dither_pixels(np.zeros((4, 4), dtype=np.float32))
    with pytest.raises(TypeError):
        ditherer.dither_pixels(np.zeros(16, dtype=np.uint32))


def test_unknown_mode_raises():
    ditherer = ImageDitherer(dither_mode="sideways", reducer=PaletteReducer())
    with pytest.raises(ValueError):
        ditherer.dither_pixels(_random_raster(2, 2))


@pytest.mark.parametrize("mode", [DitherMode.FLOYD_STEINBERG, DitherMode.BURKES,
                                  DitherMode.SIERRA_LITE, DitherMode.NOISE])
def test_error_diffusion_mixes_gray_from_black_and_white(mode):
    reducer = PaletteReducer([BLACK, WHITE])
    pixels = np.full((32, 32), 0x808080FF, dtype=np.uint32)
    out = _dither(mode, pixels, reducer)
    assert set(np.unique(out).tolist()) == {BLACK, WHITE}
    assert 0.3 < np.mean(out == WHITE) < 0.7
    solid = _dither(DitherMode.SOLID, pixels, reducer)
    assert len(np.unique(solid)) == 1


@pytest.mark.parametrize("mode", list(DitherMode))
def test_dithering_is_deterministic(mode):
    reducer = PaletteReducer()
    pixels = _random_raster(seed=6)
    assert np.array_equal(_dither(mode, pixels, reducer), _dither(mode, pixels, reducer))


def test_error_state_is_reset_between_images():
    reducer = PaletteReducer()
    strategy = FloydSteinbergDitherStrategy()
    strategy.dither(_random_raster(9, 30, seed=7), reducer)
    small = _random_raster(5, 11, seed=8)
    reused = strategy.dither(small.copy(), reducer)
    fresh = FloydSteinbergDitherStrategy().dither(small.copy(), reducer)
    assert np.array_equal(reused, fresh)
    assert strategy.state.capacity == 30


def test_blue_noise_tile_is_balanced():
    tile = generate_blue_noise(64, 42)
    assert tile.shape == (64, 64)
    assert tile.min() == -128 and tile.max() == 127
    assert np.all(np.bincount((tile + 128).ravel(), minlength=256) == 16)
    assert np.array_equal(tile, generate_blue_noise(64, 42))
    assert not np.array_equal(tile, generate_blue_noise(64, 43))


def test_bluish_seed_changes_pattern():
    reducer = PaletteReducer()
    pixels = _random_raster(32, 32, seed=9)
    first = BluishDitherStrategy(1.0, seed=1).dither(pixels.copy(), reducer)
    again = BluishDitherStrategy(1.0, seed=1).dither(pixels.copy(), reducer)
    other = BluishDitherStrategy(1.0, seed=2).dither(pixels.copy(), reducer)
    assert np.array_equal(first, again)
    assert not np.array_equal(first, other)
    assert BluishDitherStrategy(seed=1).tile is BluishDitherStrategy(seed=1).tile


def test_true_blue_uses_fixed_tile():
    assert np.array_equal(TrueBlueDitherStrategy().tile, generate_blue_noise(64, 123))


def test_negative_strength_clamps_to_zero():
    assert FloydSteinbergDitherStrategy(-2.0).strength == 0.0
    ditherer = ImageDitherer(dither_mode=DitherMode.KNOLL, reducer=PaletteReducer())
    ditherer.dither_pixels(_random_raster(2, 2))
    ditherer.set_dither_strength(-1.0)
    assert ditherer._get_dither_strategy(DitherMode.KNOLL).strength == 0.0
    assert ditherer.dither_params['strength'] == 0.0


def test_mode_parameters():
    assert ImageDitherer.get_mode_parameters(DitherMode.SOLID) is None
    assert not ImageDitherer.mode_has_parameters(DitherMode.SOLID)
    assert set(ImageDitherer.get_mode_parameters(DitherMode.BLUISH)) == {'strength', 'seed'}
    assert set(ImageDitherer.get_mode_parameters(DitherMode.KNOLL)) == {'strength'}


def test_ditherer_builds_palette_from_first_image():
    pixels = np.array([[0xFF0000FF, 0x00FF00FF], [0x0000FFFF, 0xFF0000FF]], dtype=np.uint32)
    ditherer = ImageDitherer(num_colors=16, dither_mode=DitherMode.SOLID)
    out = ditherer.dither_pixels(pixels.copy())
    assert np.array_equal(out, pixels)
    assert ditherer.get_reducer().colors() == [0xFF0000FF, 0x00FF00FF, 0x0000FFFF]


def test_ditherer_uses_explicit_palette():
    ditherer = ImageDitherer(palette=[BLACK, WHITE], dither_mode=DitherMode.SOLID)
    out = ditherer.dither_pixels(np.array([[0x101010FF, 0xF0F0F0FF]], dtype=np.uint32))
    assert out.tolist() == [[BLACK, WHITE]]


def test_apply_dithering_and_indexed_output():
    pixels = _random_raster(6, 9, seed=10, transparent_fraction=0.2)
    image = packed_to_image(pixels)
    ditherer = ImageDitherer(dither_mode=DitherMode.KNOLL, reducer=PaletteReducer())
    result = ditherer.apply_dithering(image)
    assert isinstance(result, Image.Image)
    assert result.mode == 'RGBA' and result.size == (9, 6)

    colors, indices = ditherer.apply_indexed(image)
    assert indices.shape == (6, 9)
    rebuilt = np.array(colors, dtype=np.uint32)[indices]
    assert np.array_equal(packed_to_image(rebuilt).tobytes(), result.tobytes())


def test_palette_indices_prefers_first_matching_slot():
    reducer = PaletteReducer([0, BLACK, WHITE])
    pixels = np.array([[0, WHITE, BLACK]], dtype=np.uint32)
    assert palette_indices(pixels, reducer).tolist() == [[0, 2, 1]]


def test_solid_reduces_pure_red_to_its_slot():
    red = 0xFF0000FF
    reducer = PaletteReducer([0, BLACK, WHITE, 0x00FF00FF, 0x0000FFFF, red])
    out = SolidDitherStrategy().dither(np.full((2, 2), red, dtype=np.uint32), reducer)
    assert out.tolist() == [[red, red], [red, red]]
    assert palette_indices(out, reducer).tolist() == [[5, 5], [5, 5]]


@pytest.mark.parametrize("colors, metric", [
    (None, ColorMetric.LAB_QUICK),
    ([BLACK, 0xFF0000FF, 0xFC0707FF, WHITE, 0x808080FF], ColorMetric.WEIGHTED_RGB),
])
def test_solid_is_idempotent(colors, metric):
    reducer = PaletteReducer(colors, metric=metric)
    pixels = _random_raster(64, 64, seed=11, transparent_fraction=0.1)
    once = SolidDitherStrategy().dither(pixels.copy(), reducer)
    twice = SolidDitherStrategy().dither(once.copy(), reducer)
    assert np.array_equal(once, twice)
    assert 0xFC0707FF not in np.unique(once).tolist()


@pytest.mark.parametrize("strategy", [KnollDitherStrategy, KnollRobertsDitherStrategy])
def test_knoll_blocks_match_single_pass(monkeypatch, strategy):
    reducer = PaletteReducer()
    pixels = _random_raster(23, 37, seed=12, transparent_fraction=0.1)
    whole = strategy().dither(pixels.copy(), reducer)
    monkeypatch.setattr(KnollDitherStrategy, "BLOCK_SIZE", 10)
    assert np.array_equal(strategy().dither(pixels.copy(), reducer), whole)


def test_knoll_handles_strided_raster():
    reducer = PaletteReducer()
    pixels = _random_raster(10, 30, seed=15)
    view = pixels[:, ::2]
    expected = KnollDitherStrategy().dither(np.ascontiguousarray(view), reducer)
    KnollDitherStrategy().dither(view, reducer)
    assert np.array_equal(pixels[:, ::2], expected)


def test_knoll_working_memory_is_bounded():
    reducer = PaletteReducer()
    strategy = KnollDitherStrategy()
    strategy.dither(_random_raster(4, 4), reducer)
    pixels = _random_raster(512, 512, seed=13)
    tracemalloc.start()
    try:
        strategy.dither(pixels, reducer)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()
    # The raster itself is 1 MiB
    assert peak < 32 * 1024 * 1024


def test_scatter_mixes_gray_from_black_and_white():
    reducer = PaletteReducer([BLACK, WHITE])
    pixels = np.full((32, 32), 0x808080FF, dtype=np.uint32)
    out = _dither(DitherMode.SCATTER, pixels, reducer)
    assert set(np.unique(out).tolist()) == {BLACK, WHITE}
    assert 0.2 < np.mean(out == WHITE) < 0.8


def test_blue_noise_multipliers_center_on_one():
    multipliers = blue_noise_multipliers(3)
    assert multipliers.shape == (64, 64)
    assert np.all(multipliers > 0)
    assert np.median(multipliers) == pytest.approx(1.0, abs=0.01)
    assert np.mean(np.log(multipliers)) == pytest.approx(0.0, abs=1e-9)
    assert ScatterDitherStrategy().multipliers == multipliers.tolist()


def test_chaotic_noise_uses_fixed_tile_and_moves_pixels():
    assert np.array_equal(ChaoticNoiseDitherStrategy().tile, generate_blue_noise(64, 7))
    reducer = PaletteReducer()
    pixels = _random_raster(24, 24, seed=14)
    solid = _dither(DitherMode.SOLID, pixels, reducer)
    assert not np.array_equal(_dither(DitherMode.CHAOTIC_NOISE, pixels, reducer), solid)


def test_chaotic_state_only_advances_on_dithered_pixels():
    strategy = ChaoticNoiseDitherStrategy()
    colors = np.array([[0x102030FF, 0x405060FF, 0x708090FF]], dtype=np.uint32)
    none_skipped = np.zeros((1, 3), dtype=bool)
    skipped = strategy._chaos(colors, np.array([[False, True, False]]))
    assert skipped[0, 1] == 0
    assert skipped[0, 0] == strategy._chaos(colors, none_skipped)[0, 0]
    reordered = strategy._chaos(colors[:, [0, 2, 1]], none_skipped)
    assert skipped[0, 2] == reordered[0, 1]


def test_new_modes_take_strength_only():
    for mode in (DitherMode.SCATTER, DitherMode.CHAOTIC_NOISE):
        assert set(ImageDitherer.get_mode_parameters(mode)) == {'strength'}
