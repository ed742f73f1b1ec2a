"""Brightness buckets used to tell picture content from black bars.

Thresholds are empirically tuned and must not change: near-black below
0.01, borderline-black below 0.025, dark-but-visible below 0.05, light
otherwise. A row or column is meaningful when light pixels exceed 0.1 %,
dark-but-visible pixels exceed 2 %, or borderline-black pixels exceed 90 %.
"""

from enum import IntEnum
from typing import Sequence, Union
import numpy as np

NEAR_BLACK_BELOW = 0.01
BORDERLINE_BLACK_BELOW = 0.025
DARK_VISIBLE_BELOW = 0.05
_THRESHOLDS = (NEAR_BLACK_BELOW, BORDERLINE_BLACK_BELOW, DARK_VISIBLE_BELOW)

LIGHT_FRACTION = 0.001
DARK_VISIBLE_FRACTION = 0.02
BORDERLINE_FRACTION = 0.9

# Channel weights as applied to R, G, B.
RED_WEIGHT = 0.229
GREEN_WEIGHT = 0.587
BLUE_WEIGHT = 0.114


class PixelBucket(IntEnum):
    NEAR_BLACK = 0
    BORDERLINE_BLACK = 1
    DARK_VISIBLE = 2
    LIGHT = 3


def classify(brightness: float) -> PixelBucket:
    if brightness < NEAR_BLACK_BELOW:
        return PixelBucket.NEAR_BLACK
    if brightness < BORDERLINE_BLACK_BELOW:
        return PixelBucket.BORDERLINE_BLACK
    if brightness < DARK_VISIBLE_BELOW:
        return PixelBucket.DARK_VISIBLE
    return PixelBucket.LIGHT


def brightness(pixels: np.ndarray) -> np.ndarray:
    """Per-pixel luma in [0, 1] for an ``(..., 3)`` uint8 RGB array (float32)."""
    rgb = pixels.astype(np.float32) / np.float32(255)
    return (
        rgb[..., 0] * np.float32(RED_WEIGHT)
        + rgb[..., 1] * np.float32(GREEN_WEIGHT)
        + rgb[..., 2] * np.float32(BLUE_WEIGHT)
    )


def bucket_counts(values: Union[Sequence[float], np.ndarray]) -> np.ndarray:
    """Counts of each PixelBucket, indexed by bucket value."""
    values = np.asarray(values)
    if values.dtype.kind != "f":
        values = values.astype(np.float64)
    values = values.ravel()
    if values.size == 0:
        return np.zeros(len(PixelBucket), dtype=np.int64)
    # Compare in the values' own precision so float32 luma matches float32 thresholds.
    bins = np.asarray(_THRESHOLDS, dtype=values.dtype)
    return np.bincount(np.digitize(values, bins), minlength=len(PixelBucket))


def is_meaningful(values: Union[Sequence[float], np.ndarray]) -> bool:
    """True if a row or column of brightness values holds picture content."""
    counts = bucket_counts(values)
    total = int(counts.sum())
    if total == 0:
        return False
    return bool(
        counts[PixelBucket.LIGHT] / total > LIGHT_FRACTION
        or counts[PixelBucket.DARK_VISIBLE] / total > DARK_VISIBLE_FRACTION
        or counts[PixelBucket.BORDERLINE_BLACK] / total > BORDERLINE_FRACTION
    )


def is_meaningful_pixels(pixels: np.ndarray) -> bool:
    """``is_meaningful`` for a row or column of uint8 RGB pixels."""
    return is_meaningful(brightness(pixels))
