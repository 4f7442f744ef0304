"""Euclidean descriptor matcher over an explicitly passed, immutable profile set."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from staffclock.types import as_embedding

LOGGER = logging.getLogger("staffclock.recognition.matcher")


def euclidean_distance(a: Iterable[float], b: Iterable[float]) -> float:
    left = as_embedding(a)
    right = as_embedding(b)
    if left.shape != right.shape:
        raise ValueError("Descriptor length mismatch")
    return float(np.linalg.norm(left.astype(np.float64) - right.astype(np.float64)))


def mean_descriptor(descriptors: Sequence[Iterable[float]]) -> np.ndarray:
    """Element-wise mean of a descriptor set."""
    if not descriptors:
        raise ValueError("At least one descriptor is required")
    stacked = np.stack([as_embedding(d) for d in descriptors], axis=0)
    return stacked.mean(axis=0).astype(np.float32)


@dataclass(frozen=True)
class FaceProfile:
    """Enrolled identity as seen by the matcher."""

    profile_id: str
    descriptors: Tuple[np.ndarray, ...] = field(default_factory=tuple)
    name: Optional[str] = None
    mean_descriptor: Optional[np.ndarray] = None

    @classmethod
    def from_descriptors(
        cls,
        profile_id: str,
        descriptors: Sequence[Iterable[float]],
        name: Optional[str] = None,
        use_mean: bool = False,
    ) -> "FaceProfile":
        vectors = tuple(as_embedding(d) for d in descriptors)
        mean = mean_descriptor(vectors) if use_mean and vectors else None
        return cls(profile_id=profile_id, descriptors=vectors, name=name, mean_descriptor=mean)

    def candidates(self) -> Tuple[np.ndarray, ...]:
        if self.mean_descriptor is not None:
            return (self.mean_descriptor,)
        return self.descriptors


@dataclass(frozen=True)
class MatchResult:
    matched: bool
    profile_id: Optional[str]
    name: Optional[str]
    distance: float
    threshold: float


def match_face(
    profiles: Sequence[FaceProfile],
    query: Iterable[float],
    threshold: float,
) -> MatchResult:
    """Return the global nearest descriptor across all profiles.

    ``matched`` is ``distance < threshold``. With no profiles the result is
    unmatched with an infinite distance.
    """
    best_distance = float("inf")
    best_profile: Optional[FaceProfile] = None
    if profiles:
        vector = as_embedding(query)
        for profile in profiles:
            for candidate in profile.candidates():
                distance = euclidean_distance(vector, candidate)
                if distance < best_distance:
                    best_distance = distance
                    best_profile = profile

    matched = best_profile is not None and best_distance < threshold
    LOGGER.debug(
        "match_face best=%s distance=%.4f threshold=%.3f matched=%s",
        best_profile.profile_id if best_profile else None,
        best_distance,
        threshold,
        matched,
    )
    return MatchResult(
        matched=matched,
        profile_id=best_profile.profile_id if matched and best_profile else None,
        name=(best_profile.name or best_profile.profile_id) if matched and best_profile else None,
        distance=best_distance,
        threshold=threshold,
    )
