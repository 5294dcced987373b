from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Iterable, Mapping

from camrig.calib.stereo import StereoRig, build_stereo_rig, relative_extrinsics
from camrig.core.camera import CameraProfile

REFERENCE_CAMERA = 0


@dataclass(frozen=True)
class CalibrationState:
    """
    Immutable calibration snapshot: profiles for every calibrated camera and
    one StereoRig (with rectification maps) per calibrated pair.

    Extrinsics are expressed in the frame of `reference_camera`, which is
    camera 0 whenever camera 0 calibrated, else the lowest calibrated id.
    Cameras in `unposed` carry valid intrinsics only: their stereo solve
    failed, so their rotation/translation are meaningless and they take part
    in no pair.

    A new calibration never edits a state in place; it builds a new one and
    publishes it through the CalibrationStore.
    """

    image_size: tuple[int, int]
    profiles: Mapping[int, CameraProfile]
    rigs: Mapping[tuple[int, int], StereoRig] = field(default_factory=dict)
    generation: int = 0
    reference_camera: int = REFERENCE_CAMERA
    unposed: frozenset[int] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "profiles", MappingProxyType(dict(self.profiles)))
        object.__setattr__(self, "rigs", MappingProxyType(dict(self.rigs)))
        object.__setattr__(self, "unposed", frozenset(int(c) for c in self.unposed))
        if self.profiles and self.reference_camera not in self.profiles:
            raise ValueError(f"reference camera {self.reference_camera} has no profile")
        if self.reference_camera in self.unposed:
            raise ValueError("the reference camera cannot be unposed")
        for a, b in self.rigs:
            if a in self.unposed or b in self.unposed:
                raise ValueError(f"pair ({a}, {b}) uses a camera without extrinsics")

    @property
    def camera_ids(self) -> list[int]:
        return sorted(self.profiles)

    @property
    def posed_camera_ids(self) -> list[int]:
        return [cid for cid in self.camera_ids if cid not in self.unposed]

    @property
    def pairs(self) -> list[tuple[int, int]]:
        return sorted(self.rigs)

    def rig(self, camera_a: int, camera_b: int) -> StereoRig | None:
        return self.rigs.get((int(camera_a), int(camera_b)))

    def can_pair(self, camera_a: int, camera_b: int) -> bool:
        """Both cameras have intrinsics and extrinsics in this snapshot."""
        posed = self.posed_camera_ids
        return int(camera_a) != int(camera_b) and int(camera_a) in posed and int(camera_b) in posed


def derive_rig(state: CalibrationState, camera_a: int, camera_b: int, *, alpha: float = 1.0) -> StereoRig:
    """
    Stored rig for (a, b) if there is one, else a rig built from the two
    reference-relative profiles. Raises KeyError when either camera has no pose.
    """
    a, b = int(camera_a), int(camera_b)
    stored = state.rig(a, b)
    if stored is not None:
        return stored
    if not state.can_pair(a, b):
        raise KeyError(f"no extrinsics for pair ({a}, {b})")
    R, T = relative_extrinsics(state.profiles[a], state.profiles[b])
    return build_stereo_rig(a, b, state.profiles[a], state.profiles[b], R, T, state.image_size, alpha=alpha)


def build_calibration_state(
    image_size: tuple[int, int],
    profiles: Mapping[int, CameraProfile],
    pairs: list[tuple[int, int]] | None = None,
    *,
    alpha: float = 1.0,
    generation: int = 0,
    reference_camera: int | None = None,
    unposed: Iterable[int] = (),
) -> CalibrationState:
    """
    Build a state from reference-relative profiles, deriving every rig and its
    rectification maps. By default the reference is camera 0 (or the lowest
    posed id) and pairs are (reference, k) for each other posed camera.
    """
    unposed = frozenset(int(c) for c in unposed)
    posed = [cid for cid in sorted(profiles) if cid not in unposed]
    if reference_camera is None:
        reference_camera = REFERENCE_CAMERA if REFERENCE_CAMERA in posed or not posed else posed[0]
    if pairs is None:
        pairs = [(reference_camera, cid) for cid in posed if cid != reference_camera]
    rigs: dict[tuple[int, int], StereoRig] = {}
    for a, b in pairs:
        R, T = relative_extrinsics(profiles[a], profiles[b])
        rigs[(a, b)] = build_stereo_rig(a, b, profiles[a], profiles[b], R, T, image_size, alpha=alpha)
    return CalibrationState(
        image_size=image_size,
        profiles=profiles,
        rigs=rigs,
        generation=generation,
        reference_camera=reference_camera,
        unposed=unposed,
    )


class CalibrationStore:
    """
    Holder of the current CalibrationState.

    Readers take one reference with `current()` and keep using it for the
    whole pass. Writers go through `advance`, which stamps the next generation
    and swaps the reference under one lock acquisition.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: CalibrationState | None = None

    def current(self) -> CalibrationState | None:
        with self._lock:
            return self._state

    def clear(self) -> None:
        with self._lock:
            self._state = None

    def advance(self, state: CalibrationState) -> CalibrationState:
        """Publish `state` as the next generation and return the stamped snapshot."""
        with self._lock:
            return self._swap(state)

    def advance_from(self, base: CalibrationState, state: CalibrationState) -> CalibrationState | None:
        """
        Publish `state` only if `base` is still the current snapshot.
        Returns None, leaving the store untouched, when another writer got in first.
        """
        with self._lock:
            if self._state is not base:
                return None
            return self._swap(state)

    def _swap(self, state: CalibrationState) -> CalibrationState:
        generation = 0 if self._state is None else self._state.generation + 1
        stamped = replace(state, generation=generation)
        self._state = stamped
        return stamped
