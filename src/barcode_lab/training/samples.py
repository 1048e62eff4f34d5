from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Final

from PIL import Image

from barcode_lab.errors import ConfigurationError, ErrorCode
from barcode_lab.logging import get_logger

IMAGE_SUFFIXES: Final[frozenset[str]] = frozenset({".png", ".jpg", ".jpeg", ".bmp"})


class NoreadReason(str, Enum):
    truncated = "truncated"
    blurry_or_out_of_focus = "blurry_or_out_of_focus"
    reflection_or_overexposure = "reflection_or_overexposure"
    wrinkled_or_deformed = "wrinkled_or_deformed"
    no_barcode_in_image = "no_barcode_in_image"
    stained_or_obstructed = "stained_or_obstructed"
    clear_but_not_recognized = "clear_but_not_recognized"


@dataclass(frozen=True)
class Sample:
    image_path: Path
    label: str

    def __post_init__(self) -> None:
        if not self.label.strip():
            raise ValueError(f"sample label must not be empty: {self.image_path}")


def scan_training_dir(root: Path) -> list[Sample]:
    """Collect samples from ``root/<label>/<image>``.

    Labels are the sub-directory names; files at the top level and files
    with unsupported suffixes are ignored. Files Pillow cannot identify are
    logged and dropped. Output is sorted by label and then by file name so
    scans are reproducible.
    """
    if not root.is_dir():
        raise ConfigurationError(ErrorCode.train_dir_not_found, f"training dir not found: {root}")
    out: list[Sample] = []
    for label_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        label = label_dir.name.strip()
        if not label:
            continue
        for img in sorted(label_dir.iterdir()):
            if img.is_file() and img.suffix.lower() in IMAGE_SUFFIXES and _readable(img):
                out.append(Sample(image_path=img, label=label))
    return out


def _readable(path: Path) -> bool:
    try:
        with Image.open(path) as im:
            im.verify()
    except (OSError, ValueError) as exc:
        get_logger().warning("scan_image_unreadable path=%s error=%s", path, exc)
        return False
    return True


def label_distribution(samples: Iterable[Sample]) -> dict[str, int]:
    counts = Counter(s.label for s in samples)
    return {k: counts[k] for k in sorted(counts)}


def group_by_label(samples: Iterable[Sample]) -> dict[str, list[Sample]]:
    groups: dict[str, list[Sample]] = {}
    for s in samples:
        groups.setdefault(s.label, []).append(s)
    return {k: groups[k] for k in sorted(groups)}
