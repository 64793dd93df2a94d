from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

import numpy as np

from .config import DEFAULT_MATCH_THRESHOLD, DESCRIPTOR_SIZE
from .descriptor_store import RosterSnapshot, roster_stamp
from .exceptions import InvalidInput
from .logger import setup_logger
from .types import MatchResult, Student


@dataclass(frozen=True)
class MatcherHandle:
    stamp: str
    identity_ids: tuple[str, ...]
    matrix: np.ndarray = field(compare=False, repr=False)
    threshold: float = DEFAULT_MATCH_THRESHOLD

    @property
    def size(self) -> int:
        return len(self.identity_ids)


def build_matcher(roster: Iterable[Student], threshold: float = DEFAULT_MATCH_THRESHOLD) -> MatcherHandle:
    """Stack the enrolled reference descriptors into one matrix.

    Pure: the same roster always yields an equivalent handle. Entries without
    a descriptor are skipped.
    """
    enrolled = [student for student in roster if student.descriptor is not None]
    if enrolled:
        matrix = np.vstack([student.descriptor for student in enrolled]).astype(np.float64)
    else:
        matrix = np.empty((0, DESCRIPTOR_SIZE), dtype=np.float64)
    matrix.flags.writeable = False
    return MatcherHandle(
        stamp=roster_stamp(enrolled),
        identity_ids=tuple(student.id for student in enrolled),
        matrix=matrix,
        threshold=float(threshold),
    )


def match(handle: MatcherHandle, descriptor: np.ndarray) -> MatchResult:
    if handle.size == 0:
        return MatchResult.unknown()

    probe = np.asarray(descriptor, dtype=np.float64).reshape(-1)
    if probe.size != handle.matrix.shape[1]:
        raise InvalidInput(f"Live descriptor has {probe.size} values, expected {handle.matrix.shape[1]}.")

    distances = np.linalg.norm(handle.matrix - probe, axis=1)
    idx = int(np.argmin(distances))
    best = float(distances[idx])
    if best > handle.threshold:
        return MatchResult.unknown(best)
    return MatchResult(identity_id=handle.identity_ids[idx], distance=best)


class MatcherCache:
    """Keeps one matcher per roster content stamp; rebuilds only when it changes."""

    def __init__(self, threshold: float = DEFAULT_MATCH_THRESHOLD):
        self.threshold = threshold
        self.logger = setup_logger(self.__class__.__name__)
        self._handle: Optional[MatcherHandle] = None
        self.builds = 0

    def handle_for(self, snapshot: RosterSnapshot) -> MatcherHandle:
        cached = self._handle
        if cached is not None and cached.stamp == snapshot.stamp:
            return cached

        handle = build_matcher(snapshot.enrolled, threshold=self.threshold)
        self._handle = handle
        self.builds += 1
        self.logger.info("Matcher rebuilt with %d reference descriptors", handle.size)
        return handle
