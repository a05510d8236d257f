from __future__ import annotations

from dataclasses import dataclass
import math
from pathlib import Path
from typing import cast

import click
import cv2
import numpy as np
import numpy.typing as npt
import imageio.v3 as iio
from rich.console import Console
from rich.progress import Progress
from skimage.transform import resize  # type: ignore


RGB = tuple[int, int, int]
HSV = tuple[int, float, float]
Offset = tuple[int, int]
Pixels = npt.NDArray[np.unsignedinteger]
Canvas = npt.NDArray[np.uint8]


WHITE: RGB = (255, 255, 255)
OUTPUT_NAME = "sorted.png"


@dataclass(frozen=True)
class CollageConfig:
    width: int = 4000
    height: int = 4000
    max_size: int = 400
    silhouette: bool = False

    @property
    def canvas_size(self) -> tuple[int, int]:
        """Canvas (width, height) with a max_size margin on both axes."""
        return self.width + self.max_size, self.height + self.max_size


@dataclass
class Placement:
    path: Path
    color: RGB
    hue: int
    value: float
    size: tuple[int, int]
    offset: Offset


console = Console()
print = console.print


def opaque_alpha(pixels: Pixels) -> int:
    return int(np.iinfo(pixels.dtype).max)


def widen_to_16bit(channels: npt.NDArray[np.integer]) -> npt.NDArray[np.int64]:
    wide = channels.astype(np.int64)
    if channels.dtype == np.uint8:
        wide *= 0x101
    return wide


def get_average_color(pixels: Pixels) -> RGB:
    """Average color of the fully opaque pixels, as 8-bit RGB.

    Sums happen in the 16-bit range and the mean is shifted down to 8 bits
    only after the division.
    """
    opaque = pixels[..., 3] == opaque_alpha(pixels)
    num_pixels = int(np.count_nonzero(opaque))
    if num_pixels == 0:
        raise LookupError("No fully opaque pixels in the image")

    sums = np.sum(widen_to_16bit(pixels[opaque][:, :3]), axis=0)
    average_color = (sums // num_pixels) >> 8
    return tuple(average_color.tolist())  # type: ignore


def round_half_up(num: float) -> int:
    return int(math.floor(num + 0.5))


def rgb_to_hsv(color: RGB) -> HSV:
    r, g, b = (c / 255 for c in color)
    mn, mx = min(r, g, b), max(r, g, b)
    h, s, v = 0, 0.0, mx
    d = mx - mn

    if d != 0:
        # only the red branch wraps around
        if mx == r:
            h = round_half_up(60 * ((g - b) / d + 6)) % 360
        elif mx == g:
            h = round_half_up(60 * ((b - r) / d + 2))
        else:
            h = round_half_up(60 * ((r - g) / d + 4))

    if mx != 0:
        s = d / mx

    return h, s, v


def normalized_size(width: int, height: int, max_size: int) -> tuple[int, int]:
    longest = max(width, height)
    scale = max_size / longest
    if longest == width:
        return max_size, int(scale * height)
    return int(scale * width), max_size


def resize_image(pixels: Pixels, max_size: int) -> Pixels:
    height, width = pixels.shape[:2]
    rx, ry = normalized_size(width, height, max_size)
    resized = resize(
        pixels,
        (ry, rx),
        order=0,
        mode="edge",
        preserve_range=True,
        anti_aliasing=False,
    )
    return cast(Pixels, resized.astype(pixels.dtype))


def to_8bit(pixels: Pixels) -> Canvas:
    if pixels.dtype == np.uint8:
        return cast(Canvas, pixels)
    return (pixels >> 8).astype(np.uint8)


def new_canvas(config: CollageConfig) -> Canvas:
    width, height = config.canvas_size
    canvas = np.empty((height, width, 4), dtype=np.uint8)
    canvas[...] = (*WHITE, 255)
    return canvas


def composite(
    canvas: Canvas,
    component: Pixels,
    offset: Offset,
    *,
    silhouette: bool = False,
    color: RGB = WHITE,
) -> None:
    """Draw `component` onto `canvas` in place, top-left corner at `offset`.

    Fully transparent pixels leave the canvas alone. In silhouette mode fully
    opaque pixels are filled with `color`, while partially transparent ones
    keep their own color and alpha.
    """
    x, y = offset
    ry, rx = component.shape[:2]
    region = canvas[y : y + ry, x : x + rx]
    alpha = component[..., 3]

    drawn = alpha > 0
    if silhouette:
        opaque = alpha == opaque_alpha(component)
        region[opaque] = (*color, 255)
        drawn &= ~opaque
    region[drawn] = to_8bit(component)[drawn]


def placement_offset(
    config: CollageConfig, hue: int, value: float, rx: int, ry: int
) -> Offset:
    half = config.max_size // 2
    x = half + config.width * hue // 360 - rx // 2
    y = half + int(config.height * value) - ry // 2
    return x, y


def is_source_file(path: Path) -> bool:
    """Accept regular files with a `.png` suffix, in any case."""
    return path.is_file() and path.suffix.lower() == ".png"


def list_sources(source_dir: Path | str) -> list[Path]:
    return sorted(
        (p for p in Path(source_dir).iterdir() if is_source_file(p)),
        key=lambda p: p.name,
    )


def to_rgba(pixels: Pixels) -> Pixels:
    """Widen an OpenCV gray, BGR or BGRA grid to RGBA at its own bit depth.

    Images without an alpha channel get one at the dtype's opaque value.
    """
    if pixels.ndim == 2:
        pixels = pixels[..., np.newaxis]
    channels = pixels.shape[2]
    if channels <= 2:
        color = np.repeat(pixels[..., :1], 3, axis=2)
    else:
        color = pixels[..., 2::-1]

    if channels in (2, 4):
        alpha = pixels[..., -1:]
    else:
        alpha = np.full((*pixels.shape[:2], 1), opaque_alpha(pixels), pixels.dtype)
    return cast(Pixels, np.concatenate([color, alpha], axis=2))


def load_image(path: Path | str) -> Pixels:
    buf = np.fromfile(str(path), dtype=np.uint8)
    pixels = cv2.imdecode(buf, cv2.IMREAD_UNCHANGED) if buf.size else None
    if pixels is None:
        raise OSError(f"Cannot decode image: {path}")
    return to_rgba(pixels)


def place_image(canvas: Canvas, path: Path, config: CollageConfig) -> Placement:
    pixels = load_image(path)
    color = get_average_color(pixels)
    hue, _, value = rgb_to_hsv(color)

    resized = resize_image(pixels, config.max_size)
    ry, rx = resized.shape[:2]
    offset = placement_offset(config, hue, value, rx, ry)
    composite(canvas, resized, offset, silhouette=config.silhouette, color=color)
    return Placement(
        path=path, color=color, hue=hue, value=value, size=(rx, ry), offset=offset
    )


def build_collage(
    source_dir: Path | str, config: CollageConfig, verbose: bool = False
) -> tuple[Canvas, list[Placement]]:
    canvas = new_canvas(config)
    placements: list[Placement] = []
    sources = list_sources(source_dir)

    with Progress(console=console, transient=True) as progress:
        task = progress.add_task("Placing images...", total=len(sources))
        for path in sources:
            try:
                placement = place_image(canvas, path, config)
            except LookupError:
                print(f"[yellow]Skipping {path.name}: no fully opaque pixels[/]")
                continue
            finally:
                progress.advance(task)

            placements.append(placement)
            if verbose:
                print(
                    f"{path.name}: color {placement.color} hue {placement.hue}"
                    f" value {placement.value:.3f} at {placement.offset}"
                )

    return canvas, placements


def save_collage(canvas: Canvas, path: Path | str) -> None:
    iio.imwrite(path, canvas)


@click.command()
@click.option("-w", "--width", type=click.IntRange(min=1), default=4000,
              show_default=True, help="Width of the target image.")
@click.option("-h", "--height", type=click.IntRange(min=1), default=4000,
              show_default=True, help="Height of the target image.")
@click.option("-m", "--max-size", type=click.IntRange(min=1), default=400,
              show_default=True,
              help="Size the longer side of every source image is scaled to.")
@click.option("-s", "--silhouette", is_flag=True,
              help="Draw each image as a silhouette of its average color.")
@click.option("-o", "--output", type=click.Path(dir_okay=False),
              default=OUTPUT_NAME, show_default=True)
@click.option("-v", "--verbose", is_flag=True)
@click.argument(
    "source_dir", type=click.Path(exists=True, file_okay=False, readable=True)
)
def hue_sort_main(
    width: int,
    height: int,
    max_size: int,
    silhouette: bool,
    output: str,
    verbose: bool,
    source_dir: str,
) -> None:
    config = CollageConfig(
        width=width, height=height, max_size=max_size, silhouette=silhouette
    )
    try:
        canvas, placements = build_collage(source_dir, config, verbose=verbose)
        save_collage(canvas, output)
    except (OSError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    print(f"Placed {len(placements)} images, output saved to {output}")


if __name__ == "__main__":
    hue_sort_main()
