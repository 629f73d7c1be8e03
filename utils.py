"""
Utility functions: packed-raster conversion, hex colors and palette files.
"""

import json
import logging
import os
import requests
from typing import List, Tuple, Dict, Optional
from PIL import Image
import numpy as np

logger = logging.getLogger(__name__)

__all__ = [
    # Functions
    'image_to_packed',
    'packed_to_image',
    'load_palettes_from_file',
    'save_palettes_to_file',
    'hex_to_rgb',
    'rgb_to_hex',
    'hex_to_packed',
    'packed_to_hex',
    'palette_from_hex_list',
    'import_lospec_palette',
    'validate_image_file',
    'get_image_info',
    # Classes
    'PaletteManager',
]


# -------------------- Packed Rasters --------------------

def image_to_packed(image: Image.Image) -> np.ndarray:
    """
    Convert a PIL image to a packed RGBA8888 raster.

    Args:
        image: PIL Image in any mode

    Returns:
        uint32 array of shape (height, width), red in the high byte and
        alpha in the low byte
    """
    arr = np.asarray(image.convert('RGBA'), dtype=np.uint32)
    return (arr[..., 0] << 24) | (arr[..., 1] << 16) | (arr[..., 2] << 8) | arr[..., 3]


def packed_to_image(pixels: np.ndarray) -> Image.Image:
    """
    Convert a packed RGBA8888 raster back to an RGBA PIL image.

    Args:
        pixels: uint32 array of shape (height, width)

    Returns:
        PIL Image in RGBA mode
    """
    pixels = np.asarray(pixels, dtype=np.uint32)
    arr = np.stack([(pixels >> 24) & 0xFF,
                    (pixels >> 16) & 0xFF,
                    (pixels >> 8) & 0xFF,
                    pixels & 0xFF], axis=-1).astype(np.uint8)
    return Image.fromarray(arr, 'RGBA')


# -------------------- Palette Files --------------------

def load_palettes_from_file(filepath: str = "palette.json") -> List[Dict]:
    """
    Load custom palettes from JSON file.

    Args:
        filepath: Path to palette JSON file

    Returns:
        List of palette dictionaries with 'name' and 'colors' keys
    """
    if not os.path.exists(filepath):
        return []

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            palettes = json.load(f)
        return palettes if isinstance(palettes, list) else []
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error loading palettes from {filepath}: {e}")
        return []


def save_palettes_to_file(palettes: List[Dict], filepath: str = "palette.json"):
    """
    Save palettes to JSON file.

    Args:
        palettes: List of palette dictionaries
        filepath: Path to save JSON file
    """
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(palettes, f, indent=4)


# -------------------- Hex Colors --------------------

def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """
    Convert hex color string to RGB tuple.

    Args:
        hex_color: Hex string like "#FF0000" or "FF0000"

    Returns:
        RGB tuple (r, g, b)
    """
    hex_color = hex_color.strip().lstrip('#')
    if len(hex_color) not in (6, 8):
        raise ValueError(f"Invalid hex color: '{hex_color}'")
    return tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))


def rgb_to_hex(rgb: Tuple[int, int, int]) -> str:
    """
    Convert RGB tuple to hex color string.

    Args:
        rgb: RGB tuple (r, g, b)

    Returns:
        Hex string like "#ff0000"
    """
    return f'#{rgb[0]:02x}{rgb[1]:02x}{rgb[2]:02x}'


def hex_to_packed(hex_color: str) -> int:
    """
    Convert "#RRGGBB" (opaque) or "#RRGGBBAA" to a packed RGBA8888 int.
    """
    digits = hex_color.strip().lstrip('#')
    r, g, b = hex_to_rgb(digits)
    a = int(digits[6:8], 16) if len(digits) == 8 else 0xFF
    return (r << 24) | (g << 16) | (b << 8) | a


def packed_to_hex(color: int) -> str:
    color = int(color)
    if color & 0xFF == 0xFF:
        return rgb_to_hex(((color >> 24) & 0xFF, (color >> 16) & 0xFF, (color >> 8) & 0xFF))
    return f'#{color:08x}'


def palette_from_hex_list(hex_list: List[str]) -> List[int]:
    """
    Convert list of hex colors to a palette of packed RGBA8888 ints.

    Args:
        hex_list: List of hex color strings

    Returns:
        List of packed colors
    """
    return [hex_to_packed(h) for h in hex_list]


def import_lospec_palette(url: str) -> Optional[Dict]:
    """
    Import a palette from lospec.com URL.

    Args:
        url: Lospec palette URL

    Returns:
        Dictionary with 'name' and 'colors' keys, or None if failed
    """
    # e.g., https://lospec.com/palette-list/my-palette -> my-palette
    slug = url.rstrip('/').split('/')[-1]
    if slug.endswith('.json'):
        slug = slug[:-5]
    api_url = f"https://lospec.com/palette-list/{slug}.json"

    try:
        response = requests.get(api_url, timeout=10)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.error(f"Error importing from Lospec: {e}")
        return None

    colors = [f"#{c.lower()}" for c in data.get('colors', [])]
    if not colors:
        return None

    return {
        'name': data.get('name', slug),
        'colors': colors
    }


# -------------------- Image Files --------------------

def validate_image_file(filepath: str) -> bool:
    """
    Check if file is a valid image file.

    Args:
        filepath: Path to image file

    Returns:
        True if valid image file
    """
    image_extensions = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}
    ext = os.path.splitext(filepath)[1].lower()
    return ext in image_extensions and os.path.exists(filepath)


def get_image_info(filepath: str) -> Optional[Dict]:
    """
    Get basic image information.

    Args:
        filepath: Path to image file

    Returns:
        Dictionary with width, height, mode, format
    """
    try:
        with Image.open(filepath) as img:
            return {
                'width': img.width,
                'height': img.height,
                'mode': img.mode,
                'format': img.format
            }
    except OSError as e:
        logger.error(f"Error getting image info: {e}")
        return None


class PaletteManager:
    """
    Manages custom palettes with loading, saving, and validation.
    """

    def __init__(self, filepath: str = "palette.json"):
        self.filepath = filepath
        self.palettes = []
        self.load()

    def load(self):
        """Load palettes from file."""
        self.palettes = load_palettes_from_file(self.filepath)

    def save(self):
        """Save palettes to file."""
        save_palettes_to_file(self.palettes, self.filepath)

    def add_palette(self, name: str, colors: List[str]):
        """Add a new palette, replacing any palette with the same name."""
        # Validate before touching the file
        palette_from_hex_list(colors)
        for pal in self.palettes:
            if pal['name'] == name:
                pal['colors'] = colors
                self.save()
                return

        self.palettes.append({'name': name, 'colors': colors})
        self.save()

    def add_packed_palette(self, name: str, colors: List[int]):
        """Add a palette given as packed colors, e.g. the result of an analysis."""
        self.add_palette(name, [packed_to_hex(c) for c in colors])

    def remove_palette(self, name: str):
        """Remove a palette by name."""
        self.palettes = [p for p in self.palettes if p['name'] != name]
        self.save()

    def get_palette(self, name: str) -> Optional[Dict]:
        """Get palette by name."""
        for pal in self.palettes:
            if pal['name'] == name:
                return pal
        return None

    def get_palette_colors_packed(self, name: str) -> Optional[List[int]]:
        """Get palette colors as packed RGBA8888 ints."""
        pal = self.get_palette(name)
        if pal:
            return palette_from_hex_list(pal['colors'])
        return None

    def import_from_lospec(self, url: str) -> Optional[str]:
        """Import a Lospec palette and store it; returns its name or None."""
        data = import_lospec_palette(url)
        if data is None:
            return None
        self.add_palette(data['name'], data['colors'])
        return data['name']

    def list_palette_names(self) -> List[str]:
        """Get list of all palette names."""
        return [p['name'] for p in self.palettes]
