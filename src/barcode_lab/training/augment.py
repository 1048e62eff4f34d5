from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from PIL import Image, ImageEnhance, ImageOps

from barcode_lab.errors import CancellationToken
from barcode_lab.logging import get_logger

from .options import AugmentationOptions
from .samples import Sample

OP_ROTATION: Final[str] = "rotation"
OP_HFLIP: Final[str] = "horizontal_flip"
OP_VFLIP: Final[str] = "vertical_flip"
OP_BRIGHTNESS: Final[str] = "brightness"
OPERATIONS: Final[tuple[str, ...]] = (OP_ROTATION, OP_HFLIP, OP_VFLIP, OP_BRIGHTNESS)

_MODE_RGB: Final[str] = "RGB"


@dataclass(frozen=True)
class AugmentationResult:
    samples: list[Sample]
    usage: dict[str, int]

    @property
    def generated(self) -> int:
        return len(self.samples)


def ensure_rgb_mode(img: Image.Image) -> Image.Image:
    if img.mode != _MODE_RGB:
        return img.convert(_MODE_RGB)
    return img


def rotate(img: Image.Image, angle: float) -> Image.Image:
    return img.rotate(float(angle), resample=Image.Resampling.BILINEAR, expand=False)


def flip_horizontal(img: Image.Image) -> Image.Image:
    return ImageOps.mirror(img)


def flip_vertical(img: Image.Image) -> Image.Image:
    return ImageOps.flip(img)


def adjust_brightness(img: Image.Image, factor: float) -> Image.Image:
    f = max(0.0, float(factor))
    return ImageEnhance.Brightness(ensure_rgb_mode(img)).enhance(f)


def _hit(rng: random.Random, enabled: bool, prob: float) -> bool:
    if not enabled:
        return False
    p = max(0.0, min(1.0, float(prob)))
    return rng.random() < p


def apply_random_ops(
    img: Image.Image, opts: AugmentationOptions, rng: random.Random
) -> tuple[Image.Image, list[str]]:
    """Roll every enabled operation once and apply the ones that hit.

    Returns the transformed image and the names of the applied operations.
    """
    out = img
    applied: list[str] = []
    if _hit(rng, opts.rotation_enabled and bool(opts.rotation_angles), opts.rotation_probability):
        out = rotate(out, rng.choice(opts.rotation_angles))
        applied.append(OP_ROTATION)
    if _hit(rng, opts.hflip_enabled, opts.hflip_probability):
        out = flip_horizontal(out)
        applied.append(OP_HFLIP)
    if _hit(rng, opts.vflip_enabled, opts.vflip_probability):
        out = flip_vertical(out)
        applied.append(OP_VFLIP)
    if _hit(rng, opts.brightness_enabled, opts.brightness_probability):
        out = adjust_brightness(out, rng.uniform(opts.brightness_lower, opts.brightness_upper))
        applied.append(OP_BRIGHTNESS)
    return out, applied


def _load_rgb(path: Path) -> Image.Image:
    with Image.open(path) as im:
        return ensure_rgb_mode(im).copy()


def augment_samples(
    samples: Sequence[Sample],
    opts: AugmentationOptions,
    workspace: Path,
    *,
    copies_override: int | None = None,
    seed_override: int | None = None,
    cancel: CancellationToken | None = None,
) -> AugmentationResult:
    """Write augmented copies of ``samples`` under ``workspace/<label>/``.

    Only newly generated samples are returned; sources are never touched.
    A source or copy that cannot be read or written is logged and skipped.
    """
    copies = opts.copies_per_sample if copies_override is None else int(copies_override)
    if not opts.enabled or not samples or copies <= 0:
        return AugmentationResult(samples=[], usage={})

    log = get_logger()
    seed = opts.seed if seed_override is None else int(seed_override)
    rng = random.Random(seed)
    usage: dict[str, int] = {}
    out: list[Sample] = []

    for src in samples:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            base = _load_rgb(src.image_path)
        except (OSError, ValueError) as exc:
            log.warning("augment_source_failed path=%s error=%s", src.image_path, exc)
            continue
        target_dir = workspace / src.label
        for idx in range(copies):
            try:
                img, applied = apply_random_ops(base, opts, rng)
                token = f"{rng.getrandbits(32):08x}"
                target_dir.mkdir(parents=True, exist_ok=True)
                dest = target_dir / f"{src.image_path.stem}_aug{idx:02d}_{token}.png"
                img.save(dest, format="PNG")
            except (OSError, ValueError) as exc:
                log.warning(
                    "augment_copy_failed path=%s copy=%d error=%s", src.image_path, idx, exc
                )
                continue
            out.append(Sample(image_path=dest, label=src.label))
            for name in applied:
                usage[name] = usage.get(name, 0) + 1

    if opts.shuffle and out:
        random.Random(rng.getrandbits(64)).shuffle(out)

    log.info(
        "augment_done sources=%d copies=%d generated=%d seed=%d",
        len(samples),
        copies,
        len(out),
        seed,
    )
    return AugmentationResult(samples=out, usage=usage)
