import json
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import dither_cli
from dither_cli import ConfigValidationError, detect_mode, load_config, validate_config


def _write_image(path, size=(8, 6)):
    rng = np.random.default_rng(0)
    arr = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    Image.fromarray(arr, 'RGB').save(path)
    return path


def _write_config(tmp_path, **overrides):
    config = {"input": "in.png", "output": "out/out.png"}
    config.update(overrides)
    path = tmp_path / "job.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


def test_validate_config_fills_defaults_and_resolves_paths(tmp_path):
    _write_image(tmp_path / "in.png")
    config = load_config(_write_config(tmp_path))
    assert config["input"] == str((tmp_path / "in.png").resolve())
    assert config["output"] == str((tmp_path / "out" / "out.png").resolve())
    assert config["dithering"]["mode"] == "floyd_steinberg"
    assert config["dithering"]["parameters"] == {"strength": 1.0, "seed": 42}
    assert config["palette"]["source"] == "analyze"
    assert config["palette"]["metric"] == "lab_quick"
    assert config["final_resize"] == {"enabled": False, "multiplier": 2}


def test_validate_config_uses_supplied_defaults(tmp_path):
    _write_image(tmp_path / "in.png")
    defaults = {"dither_mode": "knoll", "metric": "power_rgb", "num_colors": 16}
    config = load_config(_write_config(tmp_path), defaults)
    assert config["dithering"]["mode"] == "knoll"
    assert config["palette"]["metric"] == "power_rgb"
    assert config["palette"]["num_colors"] == 16


def test_validate_config_collects_errors(tmp_path):
    config = {
        "mode": "video",
        "dithering": {"mode": "diagonal", "parameters": {"strength": -1}},
        "palette": {"source": "nowhere", "num_colors": 1, "metric": "manhattan"},
    }
    with pytest.raises(ConfigValidationError) as excinfo:
        validate_config(config, tmp_path / "job.json", palette_file=str(tmp_path / "palette.json"))
    message = str(excinfo.value)
    for fragment in ("'input'", "'output'", "video", "diagonal", "strength", "nowhere",
                     "num_colors", "manhattan"):
        assert fragment in message


def test_validate_config_accepts_named_palette(tmp_path):
    _write_image(tmp_path / "in.png")
    palettes = tmp_path / "palette.json"
    palettes.write_text(json.dumps([{"name": "mono", "colors": ["#000000", "#ffffff"]}]))
    config = {"input": "in.png", "output": "o.png", "palette": {"source": "mono"}}
    validated = validate_config(config, tmp_path / "job.json", palette_file=str(palettes))
    assert validated["palette"]["source"] == "mono"


def test_validate_config_rejects_bad_hex_palette(tmp_path):
    config = {"input": "in.png", "output": "o.png", "palette": {"source": "hex:#000000,#12"}}
    with pytest.raises(ConfigValidationError):
        validate_config(config, tmp_path / "job.json")


@pytest.mark.parametrize("palette", [
    {"source": "default", "preload": "table.bin"},
    {"source": "analyze", "preload": "table.bin"},
    {"source": "file:ref.png", "preload": "table.bin"},
    {"preload": "table.bin"},
])
def test_validate_config_rejects_preload_without_fixed_palette(tmp_path, palette):
    _write_image(tmp_path / "in.png")
    config = {"input": "in.png", "output": "o.png", "palette": palette}
    with pytest.raises(ConfigValidationError) as excinfo:
        validate_config(config, tmp_path / "job.json")
    assert "palette.preload" in str(excinfo.value)


def test_validate_config_accepts_preload_with_hex_palette(tmp_path):
    _write_image(tmp_path / "in.png")
    config = {"input": "in.png", "output": "o.png",
              "palette": {"source": "hex:#000000,#ffffff", "preload": "table.bin"}}
    validated = validate_config(config, tmp_path / "job.json")
    assert validated["palette"]["preload"] == str((tmp_path / "table.bin").resolve())


def test_missing_input_is_reported(tmp_path):
    with pytest.raises(ConfigValidationError):
        load_config(_write_config(tmp_path))


def test_invalid_json_is_reported(tmp_path):
    path = tmp_path / "job.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        load_config(path)


def test_detect_mode(tmp_path):
    image = _write_image(tmp_path / "in.png")
    assert detect_mode(image) == "image"
    assert detect_mode(tmp_path) == "folder"
    with pytest.raises(ConfigValidationError):
        detect_mode(tmp_path / "clip.mp4")


def test_main_reduces_image_with_hex_palette(tmp_path):
    _write_image(tmp_path / "in.png")
    config_path = _write_config(
        tmp_path,
        palette={"source": "hex:#000000,#ffffff,#ff0000", "save_preload": "table.bin"},
        final_resize={"enabled": True, "multiplier": 3},
    )
    with pytest.raises(SystemExit) as excinfo:
        dither_cli.main([str(config_path), "--quiet"])
    assert excinfo.value.code == 0

    with Image.open(tmp_path / "out" / "out.png") as result:
        assert result.size == (24, 18)
        colors = {c[:3] for c in result.convert('RGBA').getdata()}
    assert colors <= {(0, 0, 0), (255, 255, 255), (255, 0, 0)}
    assert (tmp_path / "table.bin").stat().st_size == 32768


def test_main_writes_indexed_png_and_records_settings(tmp_path):
    _write_image(tmp_path / "in.png")
    config_path = _write_config(tmp_path, indexed=True,
                                palette={"source": "analyze", "num_colors": 8},
                                dithering={"mode": "knoll"})
    settings = tmp_path / "settings.json"
    with pytest.raises(SystemExit) as excinfo:
        dither_cli.main([str(config_path), "--quiet", "--settings", str(settings)])
    assert excinfo.value.code == 0

    with Image.open(tmp_path / "out" / "out.png") as result:
        assert result.mode == 'P'
        assert max(result.getdata()) < 8
    saved = json.loads(settings.read_text(encoding="utf-8"))
    assert saved["recent_files"] == [str((tmp_path / "in.png").resolve())]
    assert saved["paths"]["last_preload_dir"] is None


def test_main_records_preload_directory(tmp_path):
    _write_image(tmp_path / "in.png")
    (tmp_path / "tables").mkdir()
    config_path = _write_config(
        tmp_path,
        palette={"source": "hex:#000000,#ffffff", "save_preload": "tables/mono.bin"},
    )
    settings = tmp_path / "settings.json"
    with pytest.raises(SystemExit) as excinfo:
        dither_cli.main([str(config_path), "--quiet", "--settings", str(settings)])
    assert excinfo.value.code == 0

    saved = json.loads(settings.read_text(encoding="utf-8"))
    assert saved["paths"]["last_preload_dir"] == str((tmp_path / "tables").resolve())
    assert saved["paths"]["last_image_dir"] == str(tmp_path.resolve())


def test_process_single_image_reports_unreadable_input(tmp_path):
    (tmp_path / "in.png").write_bytes(b"not an image")
    config = load_config(_write_config(tmp_path, palette={"source": "default"}))
    assert dither_cli.process_single_image(config) is False
    assert not (tmp_path / "out" / "out.png").exists()


def test_main_processes_folder(tmp_path):
    folder = tmp_path / "frames"
    folder.mkdir()
    for i in range(3):
        _write_image(folder / f"f{i}.png")
    (folder / "notes.txt").write_text("skip me")
    config_path = _write_config(tmp_path, input="frames", output="reduced",
                                palette={"source": "default"}, dithering={"enabled": False})
    with pytest.raises(SystemExit) as excinfo:
        dither_cli.main([str(config_path), "--quiet"])
    assert excinfo.value.code == 0
    assert sorted(p.name for p in (tmp_path / "reduced").iterdir()) == ["f0.png", "f1.png", "f2.png"]


def test_main_fails_on_invalid_config(tmp_path):
    config_path = _write_config(tmp_path, dithering={"mode": "diagonal"})
    with pytest.raises(SystemExit) as excinfo:
        dither_cli.main([str(config_path), "--quiet"])
    assert excinfo.value.code == 1
