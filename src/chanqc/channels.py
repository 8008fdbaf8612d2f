"""
Channel Identity Resolution.

Maps channel labels to absolute channel ids and back. Both directions
preserve the caller's order, match labels case-insensitively and never raise
for unknown channels unless explicitly asked to: unmatched labels are
returned as data, missing ids are rendered according to an explicit policy.
"""

import logging
from typing import Literal, Sequence

import numpy as np

from chanqc.dataset import AbsoluteIndex, Dataset, InvalidSelection, channel_id

logger = logging.getLogger(__name__)

OnMissing = Literal["empty", "index", "nan"]

# Explicit "not available" marker used by on_missing="nan"
NOT_AVAILABLE = "NaN"


class LabelNotFound(ValueError):
    """Raised when labels cannot be resolved under must_exist=True."""

    def __init__(self, labels: Sequence[str]):
        self.labels = list(labels)
        super().__init__(f"Channel label(s) not found: {', '.join(self.labels)}")


def resolve_indices(
    dataset: Dataset,
    labels: str | Sequence[str],
    must_exist: bool = False,
) -> tuple[list[AbsoluteIndex], list[str]]:
    """
    Map channel labels to absolute channel ids.

    Matching is case-insensitive and exact; when several channels share a
    label the first one wins and the ambiguity is logged. Repeated labels in
    the request collapse to a single id, keeping first-occurrence order.

    Args:
        dataset: Dataset providing the channel labels
        labels: A single label or a sequence of labels
        must_exist: Raise LabelNotFound if any label has no match

    Returns:
        Tuple (indices, not_found):
        - indices: Absolute ids of matched labels, in request order
        - not_found: Requested labels without a match, in request order

    Raises:
        LabelNotFound: If must_exist is True and any label is unmatched
        TypeError: If labels contains non-string entries

    Example:
        >>> idx, missing = resolve_indices(ds, ["Fp1", "fp2", "HEOG"])
        >>> idx, missing
        ([1, 2], ['HEOG'])
    """
    if isinstance(labels, str):
        requested = [labels]
    else:
        requested = list(labels)
    if not all(isinstance(label, str) for label in requested):
        raise TypeError("labels must contain only strings")

    lookup: dict[str, AbsoluteIndex] = {}
    for idx, label in zip(dataset.channel_ids, dataset.labels):
        key = label.lower()
        if label and key not in lookup:
            lookup[key] = idx

    duplicates = dataset.duplicate_labels()
    indices: list[AbsoluteIndex] = []
    not_found: list[str] = []
    for label in requested:
        key = label.lower()
        hit = lookup.get(key)
        if hit is None:
            not_found.append(label)
            continue
        if key in duplicates:
            logger.warning(
                f"Label '{label}' matches channels {duplicates[key]}; using {hit}"
            )
        if hit not in indices:
            indices.append(hit)

    if not_found:
        if must_exist:
            raise LabelNotFound(not_found)
        logger.debug(f"Labels not found: {not_found}")

    return indices, not_found


def resolve_labels(
    dataset: Dataset,
    indices: int | Sequence[int] | Sequence[bool] | np.ndarray,
    on_missing: OnMissing = "empty",
    unique: bool = False,
) -> list[str]:
    """
    Map absolute channel ids to labels, preserving input order.

    Args:
        dataset: Dataset providing the channel labels
        indices: A single id, a sequence of ids, or a boolean mask over all
            channels
        on_missing: Rendering for ids that are out of range or unlabelled:
            "empty" -> "", "index" -> "#<id>", "nan" -> "NaN"
        unique: Drop repeated ids (stable order) before rendering

    Returns:
        One label per (possibly de-duplicated) id

    Raises:
        ValueError: If on_missing is unknown or a mask has the wrong length
    """
    if on_missing not in ("empty", "index", "nan"):
        raise ValueError(
            f"on_missing must be one of 'empty', 'index', 'nan', got '{on_missing}'"
        )

    arr = np.atleast_1d(np.asarray(indices))
    if arr.dtype == bool:
        if arr.size != dataset.n_channels:
            raise ValueError(
                f"Boolean mask has length {arr.size}, expected {dataset.n_channels}"
            )
        ids = [int(channel_id(i)) for i in np.flatnonzero(arr)]
    else:
        ids = [int(i) for i in arr.ravel()]

    if unique:
        ids = list(dict.fromkeys(ids))

    labels = []
    for idx in ids:
        label = _recorded_label(dataset, idx)
        labels.append(label if label else _missing_label(idx, on_missing))
    return labels


def _recorded_label(dataset: Dataset, index: int) -> str:
    try:
        return dataset.label(index)
    except InvalidSelection:
        return ""


def _missing_label(index: int, mode: OnMissing) -> str:
    if mode == "index":
        return f"#{index}"
    if mode == "nan":
        return NOT_AVAILABLE
    return ""
