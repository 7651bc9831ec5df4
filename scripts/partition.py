"""Automatic train / validation / leaderboard partitioning.

Used only when cross-validation is disabled: models are then scored on held-out
frames instead of out-of-fold predictions, so the missing frames are carved
out of the training data.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from scripts.config import (
    SPLIT_RATIOS_NO_FRAMES,
    SPLIT_RATIOS_NO_LEADERBOARD,
    SPLIT_RATIOS_NO_VALIDATION,
)

logger = logging.getLogger(__name__)


@dataclass
class Partition:
    train: pd.DataFrame
    validation: Optional[pd.DataFrame]
    leaderboard: Optional[pd.DataFrame]
    message: Optional[str] = None


def split_frame(frame: pd.DataFrame, ratios: Sequence[float], seed: int) -> List[Optional[pd.DataFrame]]:
    """Shuffle *frame* with *seed* and cut it according to *ratios*.

    Splits that end up empty are returned as ``None``.
    """
    if not np.isclose(sum(ratios), 1.0):
        raise ValueError(f"Split ratios must sum to 1, got {list(ratios)}")
    rng = np.random.default_rng(seed)
    order = rng.permutation(len(frame))
    bounds = np.floor(np.cumsum(ratios) * len(frame)).astype(int)
    bounds[-1] = len(frame)

    parts: List[Optional[pd.DataFrame]] = []
    start = 0
    for end in bounds:
        part = frame.iloc[np.sort(order[start:end])]
        parts.append(part if len(part) else None)
        start = end
    return parts


def partition_frames(
    train: pd.DataFrame,
    validation: Optional[pd.DataFrame],
    leaderboard: Optional[pd.DataFrame],
    seed: int,
) -> Partition:
    """Fill in the missing validation and/or leaderboard frame from *train*."""
    if validation is not None and leaderboard is not None:
        return Partition(train, validation, leaderboard)

    if validation is None and leaderboard is None:
        ratios = SPLIT_RATIOS_NO_FRAMES
        new_train, validation, leaderboard = split_frame(train, ratios, seed)
        message = (
            "Automatically split the training data into training, validation and "
            "leaderboard frames in the ratio 80/10/10"
        )
    elif validation is None:
        ratios = SPLIT_RATIOS_NO_VALIDATION
        new_train, validation, _ = split_frame(train, ratios, seed)
        message = "Automatically split the training data into training and validation frames in the ratio 90/10"
    else:
        ratios = SPLIT_RATIOS_NO_LEADERBOARD
        new_train, _, leaderboard = split_frame(train, ratios, seed)
        message = "Automatically split the training data into training and leaderboard frames in the ratio 90/10"

    if new_train is None:
        raise ValueError("Training frame is too small to be partitioned")
    logger.debug("Partitioned %d rows with ratios %s", len(train), ratios)
    return Partition(new_train, validation, leaderboard, message)


__all__ = ["Partition", "split_frame", "partition_frames"]
