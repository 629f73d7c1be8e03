#!/usr/bin/env python3
"""
CLI module for Palette Reducer - Command-Line Interface

Reduces images (or folders of images) to a palette of at most 256 colors
with a chosen dithering algorithm. Uses Rich for terminal output.
"""

import sys
import logging
import argparse
import json
from pathlib import Path
from typing import Optional, List, Dict, Any

# Rich imports for terminal output
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel
from rich.table import Table

# Local imports
from color_metrics import ColorMetric
from dithering_lib import DitherMode, ImageDitherer
from palette_reducer import PaletteReducer
from utils import (PaletteManager, get_image_info, image_to_packed, palette_from_hex_list,
                   validate_image_file)
from config_manager import ConfigManager
from PIL import Image
import numpy as np


# Initialize Rich console
console = Console()

# Logger instance
logger = logging.getLogger('palette_reducer')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler for terminal output.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    global logger

    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True
    )

    logger = logging.getLogger('palette_reducer')
    logger.setLevel(level)

    return logger


# ==================== Config Schema & Validation ====================

VALID_MODES = ["image", "folder"]
VALID_PALETTE_SOURCES = ["default", "analyze"]
VALID_DITHER_MODES = [mode.value for mode in DitherMode]
VALID_METRICS = [metric.value for metric in ColorMetric]
IMAGE_EXTENSIONS = ['.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp']


class ConfigValidationError(Exception):
    """Raised when config validation fails."""
    pass


def _check_int(section: Dict[str, Any], key: str, name: str, errors: List[str],
               low: Optional[int] = None, high: Optional[int] = None):
    if key not in section:
        return
    try:
        value = int(section[key])
    except (ValueError, TypeError):
        errors.append(f"'{name}' must be an integer")
        return
    if (low is not None and value < low) or (high is not None and value > high):
        errors.append(f"'{name}' must be between {low} and {high}")


def _check_number(section: Dict[str, Any], key: str, name: str, errors: List[str]):
    if key not in section:
        return
    try:
        value = float(section[key])
    except (ValueError, TypeError):
        errors.append(f"'{name}' must be a number")
        return
    if value < 0:
        errors.append(f"'{name}' must not be negative")


def _resolve(path: str, base: Path) -> str:
    p = Path(path)
    if not p.is_absolute():
        p = (base / p).resolve()
    return str(p)


def validate_config(config: Dict[str, Any], config_path: Path,
                    defaults: Optional[Dict[str, Any]] = None,
                    palette_file: str = "palette.json") -> Dict[str, Any]:
    """
    Validate configuration and return normalized config.

    Args:
        config: Raw config dictionary
        config_path: Path to config file (for resolving relative paths)
        defaults: Processing defaults (ConfigManager "defaults" section)
        palette_file: Path to the named palette file

    Returns:
        Validated and normalized config

    Raises:
        ConfigValidationError: If validation fails
    """
    defaults = defaults or ConfigManager.DEFAULT_CONFIG["defaults"]
    errors = []

    if not isinstance(config, dict):
        raise ConfigValidationError("Configuration validation failed:\n  • top level must be an object")

    if "input" not in config:
        errors.append("Missing required field: 'input'")
    if "output" not in config:
        errors.append("Missing required field: 'output'")

    mode = config.get("mode")
    if mode and mode not in VALID_MODES:
        errors.append(f"Invalid mode: '{mode}'. Must be one of: {VALID_MODES}")

    for section in ("dithering", "palette", "final_resize"):
        if section in config and not isinstance(config[section], dict):
            errors.append(f"'{section}' must be an object/dictionary")

    dith = config.get("dithering") if isinstance(config.get("dithering"), dict) else {}
    if "mode" in dith and dith["mode"] not in VALID_DITHER_MODES:
        errors.append(f"Invalid dither mode: '{dith['mode']}'. Must be one of: {VALID_DITHER_MODES}")
    params = dith.get("parameters", {})
    if not isinstance(params, dict):
        errors.append("'dithering.parameters' must be an object/dictionary")
    else:
        _check_number(params, "strength", "dithering.parameters.strength", errors)
        _check_int(params, "seed", "dithering.parameters.seed", errors)

    pal = config.get("palette") if isinstance(config.get("palette"), dict) else {}
    if "source" in pal:
        source = str(pal["source"])
        # Can be a built-in source, a prefixed source, or a palette name
        is_valid = (source in VALID_PALETTE_SOURCES or
                    source.startswith(("file:", "custom:", "hex:")))
        if not is_valid:
            is_valid = source in PaletteManager(palette_file).list_palette_names()
        if not is_valid:
            errors.append(f"Invalid palette source: '{source}'")
        elif source.startswith("hex:"):
            try:
                palette_from_hex_list(source[4:].split(","))
            except ValueError as e:
                errors.append(f"Invalid hex palette: {e}")
    # A preloaded table only pairs with a fixed color list
    source = str(pal.get("source", defaults.get("palette_source", "analyze")))
    if pal.get("preload") and (source in VALID_PALETTE_SOURCES or source.startswith("file:")):
        errors.append(f"palette.preload needs a fixed palette (hex:, custom: or a name), "
                      f"not '{source}'")
    _check_int(pal, "num_colors", "palette.num_colors", errors, 2, 256)
    _check_number(pal, "threshold", "palette.threshold", errors)
    if "metric" in pal and pal["metric"] not in VALID_METRICS:
        errors.append(f"Invalid metric: '{pal['metric']}'. Must be one of: {VALID_METRICS}")

    resize = config.get("final_resize") if isinstance(config.get("final_resize"), dict) else {}
    _check_int(resize, "multiplier", "final_resize.multiplier", errors, 1, 64)

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    # Normalize paths (resolve relative to config file)
    config_dir = config_path.parent
    config["input"] = _resolve(config["input"], config_dir)
    config["output"] = _resolve(config["output"], config_dir)

    if not Path(config["input"]).exists():
        raise ConfigValidationError(f"Input file/directory not found: {config['input']}")

    config.setdefault("mode", None)  # Will be auto-detected
    config.setdefault("dithering", {})
    config.setdefault("palette", {})
    config.setdefault("final_resize", {})

    config["dithering"].setdefault("enabled", True)
    config["dithering"].setdefault("mode", defaults.get("dither_mode", "floyd_steinberg"))
    config["dithering"].setdefault("parameters", {})
    config["dithering"]["parameters"].setdefault("strength", defaults.get("strength", 1.0))
    config["dithering"]["parameters"].setdefault("seed", defaults.get("seed", 42))

    config["palette"].setdefault("source", defaults.get("palette_source", "analyze"))
    config["palette"].setdefault("num_colors", defaults.get("num_colors", 256))
    config["palette"].setdefault("threshold", defaults.get("threshold", 400))
    config["palette"].setdefault("metric", defaults.get("metric", "lab_quick"))
    config["palette"].setdefault("hue_shift", False)
    for key in ("preload", "save_preload"):
        if config["palette"].get(key):
            config["palette"][key] = _resolve(config["palette"][key], config_dir)
    source = config["palette"]["source"]
    if source.startswith("file:"):
        config["palette"]["source"] = "file:" + _resolve(source[5:], config_dir)

    config["final_resize"].setdefault("enabled", defaults.get("final_resize_enabled", False))
    config["final_resize"].setdefault("multiplier", defaults.get("final_resize_multiplier", 2))
    config.setdefault("indexed", False)

    return config


def load_config(config_path: Path, defaults: Optional[Dict[str, Any]] = None,
                palette_file: str = "palette.json") -> Dict[str, Any]:
    """
    Load and validate configuration from JSON file.

    Args:
        config_path: Path to JSON config file
        defaults: Processing defaults to fill in missing fields
        palette_file: Path to the named palette file

    Returns:
        Validated config dictionary

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in config file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load config file: {e}")

    return validate_config(config, config_path, defaults, palette_file)


def detect_mode(input_path: Path) -> str:
    """
    Auto-detect processing mode based on input path.

    Args:
        input_path: Input file or directory path

    Returns:
        Mode string: "image" or "folder"
    """
    if input_path.is_dir():
        return "folder"
    ext = input_path.suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    raise ConfigValidationError(f"Cannot determine mode for file extension: {ext}")


# ==================== Palette Setup ====================

def setup_palette_from_config(palette_config: Dict[str, Any], source_image: Image.Image,
                              palette_file: str = "palette.json") -> PaletteReducer:
    """
    Build the palette reducer described by the configuration.

    Args:
        palette_config: Palette configuration from config
        source_image: Image to analyze for the "analyze" source
        palette_file: Path to the named palette file

    Returns:
        PaletteReducer ready for dithering
    """
    source = palette_config["source"]
    limit = int(palette_config["num_colors"])
    threshold = float(palette_config["threshold"])
    metric = ColorMetric.from_name(palette_config["metric"])
    preload = palette_config.get("preload")
    colors = None

    if source == "default":
        logger.info("Using default palette: [cyan]Aurora[/] (256 colors)")
        reducer = PaletteReducer(metric=metric)

    elif source == "analyze":
        logger.info(f"Analyzing input for up to [cyan]{limit}[/] colors (threshold {threshold:g})")
        reducer = PaletteReducer.from_image(image_to_packed(source_image), threshold, limit, metric)

    elif source.startswith("file:"):
        file_path = source[5:]
        if not Path(file_path).exists():
            raise ConfigValidationError(f"Palette source image not found: {file_path}")
        logger.info(f"Extracting palette from: [cyan]{file_path}[/] (up to {limit} colors)")
        with Image.open(file_path) as ref_image:
            pixels = image_to_packed(ref_image)
        reducer = PaletteReducer.from_image(pixels, threshold, limit, metric)

    elif source.startswith("hex:"):
        colors = palette_from_hex_list(source[4:].split(","))
        logger.info(f"Using inline palette ({len(colors)} colors)")

    else:
        name = source[7:] if source.startswith("custom:") else source
        colors = PaletteManager(palette_file).get_palette_colors_packed(name)
        if colors is None:
            raise ConfigValidationError(f"Custom palette not found: {name}")
        logger.info(f"Loading custom palette: [cyan]{name}[/] ({len(colors)} colors)")

    if colors is not None:
        if preload:
            logger.info(f"Loading preloaded table: [cyan]{preload}[/]")
            reducer = PaletteReducer.load_preload(preload, colors[:limit], metric)
        else:
            reducer = PaletteReducer.from_colors(colors, limit, metric)

    if palette_config.get("save_preload"):
        Path(palette_config["save_preload"]).parent.mkdir(parents=True, exist_ok=True)
        reducer.save_preload(palette_config["save_preload"])
        logger.info(f"[green]✓[/] Saved table to {palette_config['save_preload']}")

    if palette_config.get("hue_shift"):
        reducer.hue_shift()
        logger.info("Applied hue shift to palette")

    logger.info(f"[green]✓[/] Palette ready with {reducer.color_count} colors")
    return reducer


# ==================== Image Processing ====================

def build_ditherer(config: Dict[str, Any], reducer: PaletteReducer) -> ImageDitherer:
    dith = config["dithering"]
    mode = DitherMode(dith["mode"]) if dith["enabled"] else DitherMode.SOLID
    return ImageDitherer(
        num_colors=config["palette"]["num_colors"],
        dither_mode=mode,
        metric=config["palette"]["metric"],
        threshold=config["palette"]["threshold"],
        dither_params=dith.get("parameters", {}),
        reducer=reducer
    )


def reduce_image(image: Image.Image, ditherer: ImageDitherer, config: Dict[str, Any]) -> Image.Image:
    """
    Dither one image and apply the optional final resize.

    Args:
        image: Source image
        ditherer: Configured ImageDitherer
        config: Validated configuration dictionary

    Returns:
        Reduced image (RGBA, or P mode when "indexed" is set)
    """
    if config.get("indexed"):
        colors, indices = ditherer.apply_indexed(image)
        h, w = indices.shape
        result = Image.frombytes('P', (w, h), np.ascontiguousarray(indices, dtype=np.uint8).tobytes())
        flat = []
        for c in colors:
            flat.extend([(c >> 24) & 0xFF, (c >> 16) & 0xFF, (c >> 8) & 0xFF])
        result.putpalette(flat)
        if ditherer.reducer.has_transparent:
            result.info['transparency'] = 0
    else:
        result = ditherer.apply_dithering(image)

    if config["final_resize"]["enabled"]:
        multiplier = int(config["final_resize"]["multiplier"])
        w, h = result.size
        result = result.resize((w * multiplier, h * multiplier), Image.Resampling.NEAREST)
        logger.info(f"[green]✓[/] Resized to {w * multiplier}x{h * multiplier}")
    return result


def _save(result: Image.Image, output_path: Path):
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if 'transparency' in result.info:
        result.save(output_path, transparency=result.info['transparency'])
    else:
        result.save(output_path)


def process_single_image(config: Dict[str, Any], palette_file: str = "palette.json") -> bool:
    """
    Process a single image with palette reduction and dithering.

    Args:
        config: Validated configuration dictionary
        palette_file: Path to the named palette file

    Returns:
        True if successful, False otherwise
    """
    try:
        input_path = Path(config["input"])
        output_path = Path(config["output"])

        logger.info(f"Loading image: [cyan]{input_path.name}[/]")
        info = get_image_info(str(input_path))
        if info is None:
            raise ConfigValidationError(f"Cannot read image: {input_path}")
        logger.info(f"Image size: [cyan]{info['width']}x{info['height']}[/] "
                    f"({info['format']}, {info['mode']})")
        with Image.open(input_path) as img:
            image = img.convert('RGBA')

        reducer = setup_palette_from_config(config["palette"], image, palette_file)
        ditherer = build_ditherer(config, reducer)

        logger.info(f"Applying dithering: [cyan]{ditherer.dither_mode.value}[/]")
        result = reduce_image(image, ditherer, config)
        logger.info("[green]✓[/] Dithering complete")

        logger.info(f"Saving to: [cyan]{output_path}[/]")
        _save(result, output_path)

        size_kb = output_path.stat().st_size / 1024
        logger.info(f"[bold green]✓ Image saved successfully![/] ({size_kb:.1f} KB)")
        return True

    except ConfigValidationError as e:
        logger.error(f"{e}")
        return False
    except Exception as e:
        logger.error(f"Failed to process image: {e}", exc_info=True)
        return False


def process_folder(config: Dict[str, Any], palette_file: str = "palette.json") -> bool:
    """
    Process every image in a folder. Fixed palettes are built once and
    shared; "analyze" builds a palette per image.

    Args:
        config: Validated configuration dictionary
        palette_file: Path to the named palette file

    Returns:
        True if every image succeeded
    """
    input_dir = Path(config["input"])
    output_dir = Path(config["output"])
    files = sorted(p for p in input_dir.iterdir() if validate_image_file(str(p)))
    if not files:
        logger.error(f"No images found in {input_dir}")
        return False

    shared = None
    failures = 0
    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"),
                  BarColumn(), TaskProgressColumn(), console=console) as progress:
        task = progress.add_task("Reducing images...", total=len(files))
        for path in files:
            progress.update(task, description=f"Reducing {path.name}")
            try:
                with Image.open(path) as img:
                    image = img.convert('RGBA')
                if config["palette"]["source"] == "analyze" or shared is None:
                    reducer = setup_palette_from_config(config["palette"], image, palette_file)
                    if config["palette"]["source"] != "analyze":
                        shared = reducer
                else:
                    reducer = shared
                result = reduce_image(image, build_ditherer(config, reducer), config)
                _save(result, output_dir / (path.stem + ".png"))
            except Exception as e:
                failures += 1
                logger.error(f"Failed to process {path.name}: {e}", exc_info=True)
            progress.advance(task)

    logger.info(f"Processed {len(files) - failures}/{len(files)} images into [cyan]{output_dir}[/]")
    return failures == 0


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]    [bold white]Palette Reducer CLI[/] [dim]- v1.0[/]       [bold cyan]║[/]
[bold cyan]║[/]   Palette Reduction & Dithering     [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_help():
    """Display detailed help information."""
    help_text = """
[bold cyan]Palette Reducer CLI - Usage[/]

[bold]Basic Usage:[/]
  palette-reducer <config.json>          Process with JSON config
  palette-reducer --help                 Show this help
  palette-reducer --example-config       Generate example config
  palette-reducer --list-modes           List dither modes and metrics

[bold]Options:[/]
  --verbose, -v       Enable verbose output
  --quiet, -q         Suppress all but error messages
  --log-file FILE     Write log to file
  --settings FILE     User defaults file (created if missing)
  --palettes FILE     Named palette file (default: palette.json)
  --import-lospec URL Import a Lospec palette into the palette file

[bold]Config File Format:[/]
  JSON file specifying input, output, and processing parameters.
  Use --example-config to generate a template.
"""
    console.print(help_text)
    show_modes()


def show_modes():
    """List dither modes and color metrics."""
    table = Table(title="Dither Modes")
    table.add_column("Mode", style="cyan")
    table.add_column("Parameters")
    for mode in DitherMode:
        params = ImageDitherer.get_mode_parameters(mode) or {}
        table.add_row(mode.value, ", ".join(params) or "[dim]none[/]")
    console.print(table)
    console.print("  [bold]Color metrics:[/] " + ", ".join(f"[cyan]{m}[/]" for m in VALID_METRICS))


def generate_example_config():
    """Generate and print an example configuration file."""
    example = {
        "_comment": "Palette Reducer CLI Configuration",
        "input": "path/to/input.png",
        "output": "path/to/output.png",
        "mode": "image",
        "dithering": {
            "enabled": True,
            "mode": "floyd_steinberg",
            "parameters": {"strength": 1.0, "seed": 42}
        },
        "palette": {
            "_comment_source": "Options: default, analyze, file:path.png, hex:#rrggbb,..., custom:palette_name, or direct palette name",
            "source": "analyze",
            "num_colors": 256,
            "threshold": 400,
            "metric": "lab_quick",
            "preload": None,
            "save_preload": None,
            "hue_shift": False
        },
        "indexed": False,
        "final_resize": {
            "enabled": False,
            "multiplier": 2
        }
    }

    example_json = json.dumps(example, indent=4)

    console.print("\n[bold cyan]Example Configuration:[/]\n")
    console.print(Panel(example_json, title="config.json", border_style="cyan"))
    console.print("\n[dim]Save this to a .json file and modify as needed.[/]\n")


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Palette Reducer CLI - Palette Reduction & Dithering Tool",
        add_help=False  # We'll handle help ourselves
    )

    parser.add_argument('config', nargs='?', help='Path to JSON configuration file')
    parser.add_argument('--help', '-h', action='store_true', help='Show help')
    parser.add_argument('--example-config', action='store_true', help='Generate example config')
    parser.add_argument('--list-modes', action='store_true', help='List dither modes')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    parser.add_argument('--settings', type=str, help='User defaults file')
    parser.add_argument('--palettes', type=str, default='palette.json', help='Named palette file')
    parser.add_argument('--import-lospec', type=str, metavar='URL', help='Import a Lospec palette')

    args = parser.parse_args(argv)

    # Handle special commands first (before logging setup)
    if args.help:
        show_banner()
        show_help()
        sys.exit(0)

    if args.example_config:
        show_banner()
        generate_example_config()
        sys.exit(0)

    if args.list_modes:
        show_modes()
        sys.exit(0)

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    settings = ConfigManager(args.settings) if args.settings else None
    palette_file = args.palettes
    if settings is not None and args.palettes == 'palette.json':
        palette_file = settings.get("palettes", "file", default=palette_file)

    if args.import_lospec:
        name = PaletteManager(palette_file).import_from_lospec(args.import_lospec)
        if name is None:
            logger.error(f"Could not import palette from {args.import_lospec}")
            sys.exit(1)
        logger.info(f"[green]✓[/] Imported palette [cyan]{name}[/] into {palette_file}")
        if not args.config:
            sys.exit(0)

    if not args.quiet:
        show_banner()

    if not args.config:
        console.print("[bold red]Error:[/] No configuration file specified.\n")
        console.print("Usage: palette-reducer <config.json>")
        console.print("       palette-reducer --help\n")
        sys.exit(1)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        sys.exit(1)

    logger.info(f"Loading configuration from: [cyan]{config_path}[/]")

    defaults = settings.get_processing_defaults() if settings is not None else None
    try:
        config = load_config(config_path, defaults, palette_file)
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        sys.exit(1)

    logger.info("[green]✓[/] Configuration validated")

    if not config["mode"]:
        try:
            config["mode"] = detect_mode(Path(config["input"]))
            logger.info(f"Auto-detected mode: [cyan]{config['mode']}[/]")
        except ConfigValidationError as e:
            logger.error(f"{e}")
            sys.exit(1)

    logger.info(f"Input:  [cyan]{config['input']}[/]")
    logger.info(f"Output: [cyan]{config['output']}[/]")
    logger.info(f"Mode:   [cyan]{config['mode']}[/]")
    if config["dithering"]["enabled"]:
        logger.info(f"Dithering: [yellow]{config['dithering']['mode']}[/] "
                    f"(strength={config['dithering']['parameters']['strength']})")
    else:
        logger.info("Dithering: [dim]disabled[/]")
    logger.info(f"Palette: [yellow]{config['palette']['source']}[/] "
                f"({config['palette']['num_colors']} colors, {config['palette']['metric']})")

    logger.info("")

    if config["mode"] == "image":
        success = process_single_image(config, palette_file)
    else:
        success = process_folder(config, palette_file)

    if settings is not None:
        settings.update_last_path("image", config["input"])
        settings.update_last_path("save", config["output"])
        palette = config["palette"]
        settings.update_last_path("preload", palette.get("save_preload") or palette.get("preload"))
        if success:
            settings.add_recent_file(config["input"])
        settings.save()

    if success:
        logger.info("")
        logger.info("[bold green]✓ Processing complete![/]")
        sys.exit(0)
    else:
        logger.error("")
        logger.error("[bold red]✗ Processing failed![/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
