from __future__ import annotations

from torch import Tensor, nn


class BarcodeNet(nn.Module):
    """Three conv blocks and a linear head over 64x64 RGB input.

    GroupNorm keeps training well defined for any batch size, including 1.
    """

    def __init__(self, n_classes: int) -> None:
        super().__init__()
        if n_classes <= 0:
            raise ValueError("n_classes must be > 0")
        self.features = nn.Sequential(
            nn.Conv2d(3, 16, kernel_size=3, padding=1),
            nn.GroupNorm(4, 16),
            nn.ReLU(inplace=True),
            nn.MaxPool2d(2),
            nn.Conv2d(16, 32, kernel_size=3, padding=1),
            nn.GroupNorm(8, 32),
            nn.ReLU(inplace=True),
            nn.MaxPool2d(2),
            nn.Conv2d(32, 64, kernel_size=3, padding=1),
            nn.GroupNorm(8, 64),
            nn.ReLU(inplace=True),
            nn.AdaptiveAvgPool2d(1),
        )
        self.head = nn.Linear(64, n_classes)

    def forward(self, x: Tensor) -> Tensor:
        return self.head(self.features(x).flatten(1))
