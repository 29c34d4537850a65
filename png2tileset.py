import argparse
import io
import logging
import math
import os
import sys
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path

from PIL import Image

__version__ = "1.0.0"

DEFAULT_TILE_SIZE = 8

# Pillow modes the PNG encoder writes without conversion.
NATIVE_MODES = frozenset({"1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA"})

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TilesetError(Exception):
    """Base class for every fatal error of a conversion run."""


class InputNotFound(TilesetError):
    pass


class DecodeError(TilesetError):
    pass


class InvalidDimensions(TilesetError, ValueError):
    pass


class EncodeError(TilesetError):
    pass


class OutputWriteError(TilesetError):
    pass


# ---------------------------------------------------------------------------
# Image codec
# ---------------------------------------------------------------------------


@dataclass
class PixelFormat:
    """Mode of the decoded tilemap plus the metadata needed to write it back.

    *palette* is only set for indexed ("P") images; *transparency* is the
    PNG tRNS value (palette index / alpha table, grey level or RGB key).
    """

    mode: str = "RGBA"
    palette: bytes | None = None
    transparency: int | bytes | tuple[int, ...] | None = None


def pixel_format(image: Image.Image) -> PixelFormat:
    palette = bytes(image.getpalette() or []) if image.mode == "P" else None
    return PixelFormat(image.mode, palette, image.info.get("transparency"))


def decode_image(data: bytes) -> Image.Image:
    """Decode container bytes into an image PNG can store as-is.

    Modes PNG can write back (including 16-bit grey and indexed colour) are
    kept untouched so tile equality sees the samples at their full depth.
    Anything else is converted to RGBA. The image is loaded eagerly so
    truncated or corrupt data fails here rather than later in the pipeline.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
        if image.mode in NATIVE_MODES:
            log.info("Input mode: %s", image.mode)
            return image
        log.info("Input mode: %s, converted to RGBA", image.mode)
        return image.convert("RGBA")
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        msg = f"Cannot decode input image: {exc}"
        raise DecodeError(msg) from exc


def _new_image(size: tuple[int, int], fmt: PixelFormat) -> Image.Image:
    """Create a zero-filled canvas, restoring the palette if mode is 'P'."""
    img = Image.new(fmt.mode, size)
    if fmt.mode == "P" and fmt.palette is not None:
        img.putpalette(fmt.palette)
    return img


def encode_image(image: Image.Image, fmt: PixelFormat | None = None) -> bytes:
    kwargs: dict = {}
    if fmt is not None and fmt.transparency is not None:
        kwargs["transparency"] = fmt.transparency
    buf = io.BytesIO()
    try:
        image.save(buf, format="PNG", **kwargs)
    except (OSError, ValueError) as exc:
        msg = f"Cannot encode {image.width}×{image.height} tileset as PNG: {exc}"
        raise EncodeError(msg) from exc
    return buf.getvalue()


# ---------------------------------------------------------------------------
# Tile extraction & deduplication
# ---------------------------------------------------------------------------


def check_dimensions(width: int, height: int, tile_size: int) -> None:
    if tile_size <= 0:
        msg = f"Tile size must be a positive integer, got {tile_size}"
        raise InvalidDimensions(msg)
    if width % tile_size != 0:
        msg = f"Image width ({width}px) is not a multiple of the tile size ({tile_size}px)"
        raise InvalidDimensions(msg)
    if height % tile_size != 0:
        msg = f"Image height ({height}px) is not a multiple of the tile size ({tile_size}px)"
        raise InvalidDimensions(msg)


def extract_tiles(image: Image.Image, tile_size: int) -> list[Image.Image]:
    """Slice *image* into tile_size×tile_size tiles in row-major order.

    Dimensions are validated before any slicing. Every tile is an
    independent copy of its block, so callers may keep or drop tiles freely.
    """
    width, height = image.size
    check_dimensions(width, height, tile_size)

    tiles_per_row = width // tile_size
    tiles_per_col = height // tile_size
    log.info(
        "Tilemap: %d×%d px → %d tiles (%d per row)",
        width,
        height,
        tiles_per_row * tiles_per_col,
        tiles_per_row,
    )

    tiles: list[Image.Image] = []
    for ty in range(tiles_per_col):
        for tx in range(tiles_per_row):
            x0, y0 = tx * tile_size, ty * tile_size
            tiles.append(image.crop((x0, y0, x0 + tile_size, y0 + tile_size)))
    return tiles


def tile_key(tile: Image.Image) -> bytes:
    """Content key of a tile: its raw pixel bytes, compared exactly."""
    return tile.tobytes()


def deduplicate_tiles(tiles: list[Image.Image]) -> list[Image.Image]:
    """Drop repeated tiles, keeping the first occurrence of each.

    Unique tiles come back in the order they first appear in *tiles*.
    """
    seen: set[bytes] = set()
    unique_tiles: list[Image.Image] = []
    for tile in tiles:
        key = tile_key(tile)
        if key in seen:
            continue
        seen.add(key)
        unique_tiles.append(tile)

    log.info(
        "Deduplication: %d duplicates removed, %d unique tiles remain",
        len(tiles) - len(unique_tiles),
        len(unique_tiles),
    )
    return unique_tiles


def tile_index_map(tiles: list[Image.Image]) -> list[int]:
    """Return, for each source tile, the index of its unique tile."""
    positions: dict[bytes, int] = {}
    indices: list[int] = []
    for tile in tiles:
        key = tile_key(tile)
        if key not in positions:
            positions[key] = len(positions)
        indices.append(positions[key])
    return indices


def log_tile_map(indices: list[int], tiles_per_row: int) -> None:
    rows = len(indices) // tiles_per_row if tiles_per_row else 0
    lines = [f"\nTile map  ({rows} rows × {tiles_per_row} columns):", "["]
    for r in range(rows):
        row = indices[r * tiles_per_row : (r + 1) * tiles_per_row]
        comma = "," if r < rows - 1 else ""
        lines.append(f"  [{', '.join(f'{i:3d}' for i in row)}]{comma}")
    lines.append("]")
    log.debug("%s", "\n".join(lines))


# ---------------------------------------------------------------------------
# Grid packing
# ---------------------------------------------------------------------------


def compute_grid(count: int) -> tuple[int, int]:
    """Return the (cols, rows) grid, in tiles, that holds *count* tiles.

    cols = ceil(sqrt(count)), rows = ceil(count / cols). The grid is never
    taller than it is wide. An empty set still gets a single blank cell.
    """
    if count < 0:
        msg = f"Tile count must not be negative, got {count}"
        raise ValueError(msg)
    if count == 0:
        return 1, 1
    cols = math.isqrt(count - 1) + 1
    rows = -(-count // cols)  # ceiling division
    return cols, rows


def pack_grid(
    tiles: list[Image.Image],
    tile_size: int,
    fmt: PixelFormat | None = None,
) -> Image.Image:
    """Paste *tiles* in order into the smallest near-square grid.

    The canvas uses *fmt* (RGBA by default). Cells past the last tile stay
    zero-valued, which is fully transparent for modes with alpha.
    """
    cols, rows = compute_grid(len(tiles))
    img = _new_image((cols * tile_size, rows * tile_size), fmt or PixelFormat())
    for idx, tile in enumerate(tiles):
        tx = idx % cols
        ty = idx // cols
        img.paste(tile, (tx * tile_size, ty * tile_size))
    log.info(
        "Tileset: %d tiles in %d×%d grid (%d×%d px)",
        len(tiles),
        cols,
        rows,
        cols * tile_size,
        rows * tile_size,
    )
    return img


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def convert(data: bytes, tile_size: int = DEFAULT_TILE_SIZE) -> bytes:
    """Turn tilemap PNG bytes into deduplicated tileset PNG bytes."""
    image = decode_image(data)
    fmt = pixel_format(image)
    tiles = extract_tiles(image, tile_size)
    if log.isEnabledFor(logging.DEBUG):
        log_tile_map(tile_index_map(tiles), image.width // tile_size)
    unique_tiles = deduplicate_tiles(tiles)
    return encode_image(pack_grid(unique_tiles, tile_size, fmt), fmt)


def default_output_path(input_path: Path, tile_size: int) -> Path:
    return input_path.with_name(
        f"{input_path.stem or 'my'}-tileset-{tile_size}x{tile_size}.png",
    )


def read_input(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        msg = f"Cannot read input file '{path}': {exc.strerror or exc}"
        raise InputNotFound(msg) from exc


def _output_mode(path: Path) -> int:
    """Permission bits for *path*: kept if it exists, else 0o666 minus umask."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def write_output(path: Path, data: bytes) -> None:
    """Write *data* to *path* atomically, replacing any existing file.

    The bytes land in a temporary file next to *path* first, so a failed
    write never leaves a truncated tileset behind.
    """
    try:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.",
            suffix=".tmp",
            dir=path.parent,
        )
    except OSError as exc:
        msg = f"Cannot write output file '{path}': {exc.strerror or exc}"
        raise OutputWriteError(msg) from exc

    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        tmp_path.chmod(_output_mode(path))
        os.replace(tmp_path, path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        msg = f"Cannot write output file '{path}': {exc.strerror or exc}"
        raise OutputWriteError(msg) from exc
    log.info("Saved to %s (%d bytes)", path, len(data))


def run(input_path: Path, output_path: Path | None, tile_size: int) -> Path:
    """Convert the file at *input_path* and return where the tileset went."""
    if output_path is None:
        output_path = default_output_path(input_path, tile_size)
    data = convert(read_input(input_path), tile_size)
    write_output(output_path, data)
    return output_path


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="png2tileset",
        description="Convert a PNG tilemap into a PNG tileset of its unique tiles.",
    )
    parser.add_argument("file", help="Tilemap PNG file")
    parser.add_argument(
        "-o",
        "--output",
        default=None,
        metavar="PATH",
        help="Output file path (default: <name>-tileset-<N>x<N>.png next to the input)",
    )
    parser.add_argument(
        "-s",
        "--size",
        type=int,
        default=DEFAULT_TILE_SIZE,
        metavar="N",
        help=f"Tile size in pixels (default: {DEFAULT_TILE_SIZE})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug-level logging (includes the tile index map)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    args = parser.parse_args(argv)

    if args.size <= 0:
        parser.error("-s/--size must be a positive integer")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    output_path = Path(args.output) if args.output is not None else None
    try:
        run(Path(args.file), output_path, args.size)
    except TilesetError as exc:
        log.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
