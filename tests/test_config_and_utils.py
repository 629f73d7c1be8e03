import json
import sys
from pathlib import Path

import numpy as np
import pytest
import requests
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_manager import ConfigManager
from utils import (
    PaletteManager,
    get_image_info,
    hex_to_packed,
    hex_to_rgb,
    image_to_packed,
    import_lospec_palette,
    packed_to_hex,
    packed_to_image,
    palette_from_hex_list,
    validate_image_file,
)


def test_image_packing_round_trip():
    image = Image.new('RGBA', (3, 2), (0x12, 0x34, 0x56, 0x78))
    image.putpixel((2, 1), (255, 0, 0, 255))
    packed = image_to_packed(image)
    assert packed.dtype == np.uint32 and packed.shape == (2, 3)
    assert int(packed[0, 0]) == 0x12345678
    assert int(packed[1, 2]) == 0xFF0000FF
    assert packed_to_image(packed).tobytes() == image.tobytes()


def test_rgb_image_packs_as_opaque():
    packed = image_to_packed(Image.new('RGB', (1, 1), (1, 2, 3)))
    assert int(packed[0, 0]) == 0x010203FF


def test_hex_conversions():
    assert hex_to_rgb("#FF8000") == (255, 128, 0)
    assert hex_to_packed("#ff8000") == 0xFF8000FF
    assert hex_to_packed("ff800040") == 0xFF800040
    assert packed_to_hex(0xFF8000FF) == "#ff8000"
    assert packed_to_hex(0xFF800040) == "#ff800040"
    assert palette_from_hex_list(["#000000", "#ffffff"]) == [0x000000FF, 0xFFFFFFFF]
    with pytest.raises(ValueError):
        hex_to_rgb("#fff")


def test_palette_manager_persists_palettes(tmp_path):
    path = str(tmp_path / "palette.json")
    manager = PaletteManager(path)
    assert manager.list_palette_names() == []

    manager.add_palette("mono", ["#000000", "#ffffff"])
    manager.add_packed_palette("reds", [0xFF0000FF, 0x800000FF])
    reloaded = PaletteManager(path)
    assert reloaded.list_palette_names() == ["mono", "reds"]
    assert reloaded.get_palette_colors_packed("reds") == [0xFF0000FF, 0x800000FF]
    assert reloaded.get_palette_colors_packed("missing") is None

    reloaded.add_palette("mono", ["#101010", "#efefef"])
    reloaded.remove_palette("reds")
    final = PaletteManager(path)
    assert final.list_palette_names() == ["mono"]
    assert final.get_palette("mono")["colors"] == ["#101010", "#efefef"]


def test_palette_manager_rejects_bad_hex(tmp_path):
    manager = PaletteManager(str(tmp_path / "palette.json"))
    with pytest.raises(ValueError):
        manager.add_palette("broken", ["#12"])
    assert manager.list_palette_names() == []


def test_corrupt_palette_file_loads_empty(tmp_path):
    path = tmp_path / "palette.json"
    path.write_text("{not json", encoding="utf-8")
    assert PaletteManager(str(path)).palettes == []


class _FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"status {self.status}")

    def json(self):
        return self.payload


def test_import_lospec_palette(monkeypatch, tmp_path):
    calls = []

    def fake_get(url, timeout):
        calls.append(url)
        return _FakeResponse({"name": "Tiny", "colors": ["000000", "FFFFFF"]})

    monkeypatch.setattr(requests, "get", fake_get)
    data = import_lospec_palette("https://lospec.com/palette-list/tiny")
    assert calls == ["https://lospec.com/palette-list/tiny.json"]
    assert data == {"name": "Tiny", "colors": ["#000000", "#ffffff"]}

    manager = PaletteManager(str(tmp_path / "palette.json"))
    assert manager.import_from_lospec("https://lospec.com/palette-list/tiny/") == "Tiny"
    assert manager.get_palette_colors_packed("Tiny") == [0x000000FF, 0xFFFFFFFF]


def test_import_lospec_failure_returns_none(monkeypatch):
    monkeypatch.setattr(requests, "get", lambda url, timeout: _FakeResponse({}, status=404))
    assert import_lospec_palette("https://lospec.com/palette-list/nope") is None


def test_image_file_helpers(tmp_path):
    path = tmp_path / "img.png"
    Image.new('RGB', (4, 3)).save(path)
    assert validate_image_file(str(path))
    assert not validate_image_file(str(tmp_path / "missing.png"))
    assert not validate_image_file(str(tmp_path))
    assert get_image_info(str(path)) == {'width': 4, 'height': 3, 'mode': 'RGB', 'format': 'PNG'}


def test_config_manager_creates_defaults(tmp_path):
    path = tmp_path / "settings.json"
    config = ConfigManager(str(path))
    assert path.exists()
    assert config.get("defaults", "num_colors") == 256
    assert config.get("defaults", "missing", default="x") == "x"
    assert config.get_processing_defaults()["metric"] == "lab_quick"


def test_config_manager_merges_with_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"defaults": {"strength": 0.5}, "extra": 1}), encoding="utf-8")
    config = ConfigManager(str(path))
    assert config.get("defaults", "strength") == 0.5
    assert config.get("defaults", "dither_mode") == "floyd_steinberg"
    assert config.get("extra") is None
    # Class defaults are not touched by a merge
    assert ConfigManager.DEFAULT_CONFIG["defaults"]["strength"] == 1.0


def test_config_manager_set_save_and_recent_files(tmp_path):
    path = tmp_path / "settings.json"
    image = tmp_path / "a.png"
    image.write_bytes(b"")
    config = ConfigManager(str(path))
    config.set("defaults", "metric", value="power_rgb")
    config.update_last_path("image", str(image))
    config.add_recent_file(str(image))
    config.add_recent_file(str(tmp_path / "gone.png"))
    config.add_recent_file(str(image))
    config.save()

    reloaded = ConfigManager(str(path))
    assert reloaded.get("defaults", "metric") == "power_rgb"
    assert reloaded.get("paths", "last_image_dir") == str(tmp_path)
    assert reloaded.get("recent_files")[0] == str(image)
    assert reloaded.get_recent_files() == [str(image)]
    reloaded.clear_recent_files()
    assert reloaded.get_recent_files() == []
