"""
Dataset Model for Channel Quality Assessment.

This module defines the read-only data model consumed by every detector:
- ChannelInfo: label and optional electrode geometry of one channel
- Dataset: channels x samples signal matrix with per-channel geometry
- ChannelSubset: ordered, de-duplicated selection of channels to analyze

Index spaces:
    Two channel index spaces are used throughout the package and are kept
    apart by type:

    - AbsoluteIndex: 1-based channel number (1..N), stable for the lifetime
      of a Dataset. This is the identity reported to callers.
    - SubsetIndex: 0-based position inside an analyzed ChannelSubset. Views
      handed to detector delegates keep the subset order, so a delegate's
      channel position is a SubsetIndex as well.

    Conversions go through to_absolute() / to_relative() for subsets and
    channel_row() / channel_id() for rows of channels-first arrays (wrapped
    by Dataset.position() and Dataset.channel_ids); nothing else shifts
    indices by one.

Geometry follows the EEGLAB chanlocs convention: Cartesian X points to the
nose, Y to the left ear, Z up; theta is the topographic angle in degrees and
radius the normalized arc distance from the vertex.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import NewType, Sequence

import mne
import numpy as np

logger = logging.getLogger(__name__)

AbsoluteIndex = NewType("AbsoluteIndex", int)
SubsetIndex = NewType("SubsetIndex", int)


class InvalidSelection(ValueError):
    """Raised when a channel selection is empty or references unknown channels."""

    pass


@dataclass(frozen=True)
class ChannelInfo:
    """
    Identity and geometry of a single channel.

    Attributes:
        label: Channel label as recorded (may be empty or duplicated)
        theta: Topographic angle in degrees (None if unknown)
        radius: Topographic radius (None if unknown)
        x: Cartesian X coordinate (None if unknown)
        y: Cartesian Y coordinate (None if unknown)
        z: Cartesian Z coordinate (None if unknown)
    """

    label: str
    theta: float | None = None
    radius: float | None = None
    x: float | None = None
    y: float | None = None
    z: float | None = None

    @property
    def has_polar(self) -> bool:
        return self.theta is not None and self.radius is not None

    @property
    def has_cartesian(self) -> bool:
        return self.x is not None and self.y is not None and self.z is not None


@dataclass(frozen=True)
class ChannelSubset:
    """Ordered, de-duplicated absolute channel ids selected for analysis."""

    indices: tuple[AbsoluteIndex, ...]

    def __post_init__(self) -> None:
        if not self.indices:
            raise InvalidSelection("Channel subset is empty")
        if len(set(self.indices)) != len(self.indices):
            raise InvalidSelection(
                f"Channel subset contains duplicates: {list(self.indices)}"
            )

    def __len__(self) -> int:
        return len(self.indices)

    def __iter__(self):
        return iter(self.indices)

    def __contains__(self, item: object) -> bool:
        return item in self.indices

    def to_absolute(self, relative: Sequence[int]) -> list[AbsoluteIndex]:
        """Map subset positions to absolute channel ids."""
        return [to_absolute(self, r) for r in relative]

    def to_relative(self, absolute: Sequence[int]) -> list[SubsetIndex]:
        """Map absolute channel ids to subset positions."""
        return [to_relative(self, a) for a in absolute]


def to_absolute(subset: ChannelSubset, relative: int) -> AbsoluteIndex:
    """Convert a subset position into the absolute channel id it refers to."""
    if not 0 <= relative < len(subset.indices):
        raise IndexError(
            f"Subset position {relative} out of range for subset of "
            f"{len(subset.indices)} channels"
        )
    return subset.indices[relative]


def to_relative(subset: ChannelSubset, absolute: int) -> SubsetIndex:
    """Convert an absolute channel id into its position inside the subset."""
    try:
        return SubsetIndex(subset.indices.index(absolute))
    except ValueError:
        raise IndexError(f"Channel {absolute} is not part of the subset") from None


def channel_row(index: int, n_channels: int) -> int:
    """Row of a channels-first array holding absolute channel `index`."""
    if not 1 <= index <= n_channels:
        raise InvalidSelection(f"Channel {index} out of range [1, {n_channels}]")
    return int(index) - 1


def channel_id(row: int) -> AbsoluteIndex:
    """Absolute channel id stored in row `row` of a channels-first array."""
    return AbsoluteIndex(int(row) + 1)


@dataclass(frozen=True)
class Dataset:
    """
    Multichannel recording with per-channel identity and geometry.

    The signal matrix is copied and made read-only on construction, so a
    Dataset never aliases caller-owned arrays and cannot be mutated by the
    detectors that consume it.

    Attributes:
        data: (n_channels, n_times) signal matrix
        sfreq: Sampling frequency in Hz
        channels: One ChannelInfo per row of data, in channel order

    Example:
        >>> ds = Dataset.from_array(np.random.randn(4, 1000), sfreq=250.0)
        >>> ds.labels
        ('CH1', 'CH2', 'CH3', 'CH4')
    """

    data: np.ndarray
    sfreq: float
    channels: tuple[ChannelInfo, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=float, copy=True)
        if data.ndim != 2:
            raise ValueError(
                f"Dataset data must be 2D (n_channels, n_times), got shape {data.shape}"
            )
        data.setflags(write=False)
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "channels", tuple(self.channels))

        if self.sfreq <= 0:
            raise ValueError(f"sfreq must be positive, got {self.sfreq}")
        if len(self.channels) != data.shape[0]:
            raise ValueError(
                f"Channel info count ({len(self.channels)}) does not match "
                f"data channels ({data.shape[0]})"
            )

        duplicates = self.duplicate_labels()
        if duplicates:
            logger.warning(
                f"Duplicate channel labels (first occurrence wins on lookup): "
                f"{duplicates}"
            )

    @property
    def n_channels(self) -> int:
        return self.data.shape[0]

    @property
    def n_times(self) -> int:
        return self.data.shape[1]

    @property
    def labels(self) -> tuple[str, ...]:
        return tuple(ch.label for ch in self.channels)

    @property
    def channel_ids(self) -> tuple[AbsoluteIndex, ...]:
        """All absolute channel ids, in row order."""
        return tuple(channel_id(row) for row in range(self.n_channels))

    def label(self, index: int) -> str:
        """Recorded label of absolute channel `index` (may be empty)."""
        return self.channels[self.position(index)].label

    def duplicate_labels(self) -> dict[str, list[AbsoluteIndex]]:
        """
        Report labels shared by more than one channel (case-insensitive).

        Returns:
            Mapping of lower-cased label to the absolute ids carrying it
        """
        counts = Counter(ch.label.lower() for ch in self.channels if ch.label)
        duplicates: dict[str, list[AbsoluteIndex]] = {}
        for idx, ch in zip(self.channel_ids, self.channels):
            key = ch.label.lower()
            if ch.label and counts[key] > 1:
                duplicates.setdefault(key, []).append(idx)
        return duplicates

    def position(self, index: int) -> int:
        """Row of `data` holding absolute channel `index`."""
        return channel_row(index, self.n_channels)

    def signal(self, index: int) -> np.ndarray:
        """Read-only samples of absolute channel `index`."""
        return self.data[self.position(index)]

    def info(self, index: int) -> ChannelInfo:
        return self.channels[self.position(index)]

    def select(self, subset: ChannelSubset) -> "Dataset":
        """
        Build a copy restricted to `subset`, in subset order.

        The returned Dataset owns its data; the caller's Dataset is untouched.
        Channel k of the result corresponds to SubsetIndex k.
        """
        rows = [self.position(idx) for idx in subset]
        return Dataset(
            data=self.data[rows, :],
            sfreq=self.sfreq,
            channels=tuple(self.channels[row] for row in rows),
        )

    def to_raw(self) -> mne.io.RawArray:
        """
        Convert to an MNE RawArray for use by detector delegates.

        Channel names are made unique (MNE requires it) by suffixing repeated
        labels; empty labels become CH<n>. A montage is attached when every
        channel has Cartesian coordinates.
        """
        names = _unique_names(self.labels)
        info = mne.create_info(ch_names=names, sfreq=self.sfreq, ch_types="eeg")
        raw = mne.io.RawArray(np.array(self.data), info, verbose=False)

        if self.channels and all(ch.has_cartesian for ch in self.channels):
            # EEGLAB (+X nose, +Y left) -> MNE head frame (+X right, +Y nose)
            ch_pos = {
                name: np.array([-ch.y, ch.x, ch.z], dtype=float)
                for name, ch in zip(names, self.channels)
            }
            montage = mne.channels.make_dig_montage(ch_pos=ch_pos, coord_frame="head")
            raw.set_montage(montage, on_missing="ignore", verbose=False)

        return raw

    @classmethod
    def from_array(
        cls,
        data: np.ndarray,
        sfreq: float,
        labels: Sequence[str] | None = None,
        positions: Sequence[tuple[float, float, float] | None] | None = None,
    ) -> "Dataset":
        """
        Create a Dataset from a plain array.

        Args:
            data: (n_channels, n_times) signal matrix
            sfreq: Sampling frequency in Hz
            labels: Channel labels (default CH1..CHn)
            positions: Optional EEGLAB-oriented (x, y, z) per channel; polar
                geometry is derived from them

        Returns:
            Dataset instance
        """
        data = np.asarray(data, dtype=float)
        if data.ndim != 2:
            raise ValueError(
                f"Dataset data must be 2D (n_channels, n_times), got shape {data.shape}"
            )
        n_channels = data.shape[0]
        if labels is None:
            labels = [f"CH{channel_id(row)}" for row in range(n_channels)]
        if len(labels) != n_channels:
            raise ValueError(
                f"Label count ({len(labels)}) does not match data channels ({n_channels})"
            )
        if positions is None:
            positions = [None] * n_channels
        if len(positions) != n_channels:
            raise ValueError(
                f"Position count ({len(positions)}) does not match data channels "
                f"({n_channels})"
            )

        channels = tuple(
            _channel_from_cartesian(label, pos) for label, pos in zip(labels, positions)
        )
        return cls(data=data, sfreq=float(sfreq), channels=channels)

    @classmethod
    def from_raw(cls, raw: mne.io.BaseRaw, picks: str | list[str] | None = "eeg") -> "Dataset":
        """
        Create a Dataset from an MNE Raw object.

        Sensor positions are read from raw.info["chs"][i]["loc"] (MNE head
        frame, meters) and converted to the EEGLAB orientation. Channels
        without a finite position get no geometry.

        Args:
            raw: MNE Raw object (loaded into memory on demand)
            picks: MNE picks selector (default: EEG channels)

        Returns:
            Dataset with one channel per picked MNE channel, in MNE order
        """
        if picks == "eeg":
            pick_idx = mne.pick_types(raw.info, eeg=True, exclude=[])
        elif isinstance(picks, list):
            pick_idx = mne.pick_channels(raw.ch_names, include=picks, ordered=True)
        else:
            pick_idx = np.arange(len(raw.ch_names))
        if len(pick_idx) == 0:
            raise InvalidSelection("No channels matched the picks criteria")

        data = raw.get_data(picks=pick_idx)
        labels = [raw.ch_names[i] for i in pick_idx]
        positions = []
        for i in pick_idx:
            loc = raw.info["chs"][i]["loc"][:3]
            if np.all(np.isfinite(loc)) and np.any(loc != 0):
                # MNE head frame (+X right, +Y nose) -> EEGLAB (+X nose, +Y left)
                positions.append((float(loc[1]), float(-loc[0]), float(loc[2])))
            else:
                positions.append(None)

        logger.info(
            f"Built dataset from Raw: {len(labels)} channels, "
            f"{data.shape[1]} samples @ {raw.info['sfreq']} Hz "
            f"({sum(p is not None for p in positions)} with positions)"
        )
        return cls.from_array(data, raw.info["sfreq"], labels=labels, positions=positions)


def resolve_subset(
    dataset: Dataset,
    selection: int | Sequence[int] | Sequence[bool] | np.ndarray | None = None,
    strict: bool = False,
) -> ChannelSubset:
    """
    Resolve a channel selection into a bounds-checked ChannelSubset.

    Args:
        dataset: Dataset the selection refers to
        selection: None (all channels), a single absolute id, a sequence of
            absolute ids, or a boolean mask of length n_channels
        strict: If True, any out-of-range id raises InvalidSelection instead
            of being dropped

    Returns:
        ChannelSubset in first-occurrence order without duplicates

    Raises:
        InvalidSelection: If nothing valid remains, the mask has the wrong
            length, or (strict) an id is out of range
    """
    n = dataset.n_channels
    if selection is None:
        candidates = [int(i) for i in dataset.channel_ids]
    else:
        arr = np.atleast_1d(np.asarray(selection))
        if arr.dtype == bool:
            if arr.size != n:
                raise InvalidSelection(
                    f"Boolean channel mask has length {arr.size}, expected {n}"
                )
            candidates = [int(channel_id(i)) for i in np.flatnonzero(arr)]
        elif arr.size == 0:
            candidates = []
        elif np.issubdtype(arr.dtype, np.integer):
            candidates = [int(i) for i in arr.ravel()]
        else:
            raise InvalidSelection(
                f"Channel selection must be integer ids or a boolean mask, got "
                f"dtype {arr.dtype}"
            )

    out_of_range = [i for i in candidates if not 1 <= i <= n]
    if out_of_range:
        if strict:
            raise InvalidSelection(
                f"Channel ids out of range [1, {n}]: {out_of_range}"
            )
        logger.warning(f"Ignoring channel ids out of range [1, {n}]: {out_of_range}")

    seen: dict[int, None] = {}
    for i in candidates:
        if 1 <= i <= n:
            seen.setdefault(i, None)

    if not seen:
        raise InvalidSelection("No valid channels selected")

    return ChannelSubset(tuple(AbsoluteIndex(i) for i in seen))


def _channel_from_cartesian(
    label: str, pos: tuple[float, float, float] | None
) -> ChannelInfo:
    if pos is None:
        return ChannelInfo(label=label)
    x, y, z = (float(v) for v in pos)
    theta, radius = cartesian_to_topo(x, y, z)
    return ChannelInfo(label=label, theta=theta, radius=radius, x=x, y=y, z=z)


def cartesian_to_topo(x: float, y: float, z: float) -> tuple[float, float]:
    """
    Convert EEGLAB Cartesian coordinates to topographic (theta, radius).

    theta is minus the azimuth in degrees; radius is 0.5 - elevation / 180,
    so the vertex maps to 0 and the horizontal plane to 0.5.
    """
    azimuth = np.degrees(np.arctan2(y, x))
    elevation = np.degrees(np.arctan2(z, np.hypot(x, y)))
    return float(-azimuth), float(0.5 - elevation / 180.0)


def _unique_names(labels: Sequence[str]) -> list[str]:
    names: list[str] = []
    seen: Counter = Counter()
    for row, label in enumerate(labels):
        name = label if label else f"CH{channel_id(row)}"
        seen[name] += 1
        if seen[name] > 1:
            name = f"{name}-{seen[name] - 1}"
        names.append(name)
    return names
