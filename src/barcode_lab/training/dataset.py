from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

import torch
from PIL import Image
from torch import Tensor
from torch.utils.data import DataLoader, Dataset

from .augment import ensure_rgb_mode
from .samples import Sample, group_by_label

IMAGE_SIZE: Final[int] = 64


def load_tensor(sample: Sample, size: int = IMAGE_SIZE) -> Tensor:
    """Decode, resize and scale one image into a ``(3, size, size)`` float tensor."""
    with Image.open(sample.image_path) as im:
        rgb = ensure_rgb_mode(im).resize((size, size), resample=Image.Resampling.BILINEAR)
        raw = bytearray(rgb.tobytes())
    t = torch.frombuffer(raw, dtype=torch.uint8).view(size, size, 3)
    return t.permute(2, 0, 1).float().div(255.0)


class SampleDataset(Dataset[tuple[Tensor, Tensor]]):
    def __init__(
        self, samples: Sequence[Sample], label_index: dict[str, int], size: int = IMAGE_SIZE
    ) -> None:
        self._samples = list(samples)
        self._index = dict(label_index)
        self._size = int(size)

    def __len__(self) -> int:
        return len(self._samples)

    def __getitem__(self, idx: int) -> tuple[Tensor, Tensor]:
        s = self._samples[idx]
        return load_tensor(s, self._size), torch.tensor(self._index[s.label], dtype=torch.long)


@dataclass(frozen=True)
class Split:
    train: list[Sample]
    validation: list[Sample]


def stratified_split(samples: Sequence[Sample], ratio: float, seed: int) -> Split:
    """Hold out ``ratio`` of every label, keeping at least one training sample per label.

    A ratio of 0 yields an empty validation set.
    """
    rng = random.Random(seed)
    train: list[Sample] = []
    val: list[Sample] = []
    for members in group_by_label(samples).values():
        shuffled = list(members)
        rng.shuffle(shuffled)
        n_val = int(round(len(shuffled) * ratio))
        if ratio > 0 and n_val == 0 and len(shuffled) >= 2:
            n_val = 1
        n_val = min(n_val, len(shuffled) - 1)
        val.extend(shuffled[:n_val])
        train.extend(shuffled[n_val:])
    return Split(train=train, validation=val)


def make_loader(
    samples: Sequence[Sample],
    label_index: dict[str, int],
    *,
    batch_size: int,
    shuffle: bool,
    seed: int,
) -> DataLoader[tuple[Tensor, Tensor]]:
    gen = torch.Generator()
    gen.manual_seed(int(seed))
    ds = SampleDataset(samples, label_index)
    return DataLoader(ds, batch_size=int(batch_size), shuffle=shuffle, num_workers=0, generator=gen)
