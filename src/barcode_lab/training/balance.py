from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass

from barcode_lab.logging import get_logger

from .options import BalancingOptions, BalancingStrategy
from .samples import Sample, group_by_label, label_distribution


@dataclass(frozen=True)
class BalanceResult:
    samples: list[Sample]
    distribution: dict[str, int]


def resolve_target(sizes: Sequence[int], opts: BalancingOptions) -> int:
    if opts.target_per_class is not None:
        return max(0, int(opts.target_per_class))
    if opts.strategy is BalancingStrategy.over_sample:
        return max(sizes)
    return min(sizes)


def balance_samples(samples: Sequence[Sample], opts: BalancingOptions) -> BalanceResult:
    """Resample ``samples`` so every label reaches (or is capped at) a common count.

    Over-sampling only ever grows a class and under-sampling only ever shrinks
    one. A fresh generator is seeded per call, so identical input and options
    always produce the same output.
    """
    if opts.strategy is BalancingStrategy.none or not samples:
        items = list(samples)
        return BalanceResult(samples=items, distribution=label_distribution(items))

    groups = group_by_label(samples)
    target = resolve_target([len(g) for g in groups.values()], opts)
    rng = random.Random(opts.seed)

    out: list[Sample] = []
    for label, members in groups.items():
        if opts.strategy is BalancingStrategy.over_sample:
            grown = list(members)
            while len(grown) < target:
                grown.append(members[rng.randrange(len(members))])
            out.extend(grown)
        else:
            shuffled = list(members)
            rng.shuffle(shuffled)
            kept = shuffled[: min(target, len(shuffled))]
            if not kept:
                get_logger().info("balance_class_dropped label=%s", label)
            out.extend(kept)

    if opts.shuffle:
        rng.shuffle(out)

    dist = label_distribution(out)
    get_logger().info(
        "balance_done strategy=%s target=%d before=%d after=%d",
        opts.strategy.value,
        target,
        len(samples),
        len(out),
    )
    return BalanceResult(samples=out, distribution=dist)
