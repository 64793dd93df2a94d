from __future__ import annotations

import math
from collections import Counter, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, List, Optional, Protocol

from .logger import setup_logger
from .types import Student

STATUS_INITIALIZING = "Initializing camera..."
STATUS_READY = "Camera ready. Looking for faces..."
STATUS_NO_FACE = "No face detected."
STATUS_UNKNOWN = "Face not recognized."


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    IDENTIFIED = "identified"


class VerdictKind(str, Enum):
    SOURCE_NOT_READY = "source-not-ready"
    NO_FACE = "no-face"
    UNKNOWN = "unknown"
    MATCH = "match"


@dataclass(frozen=True)
class Verdict:
    kind: VerdictKind
    student: Optional[Student] = None
    distance: float = math.inf

    @property
    def key(self) -> str:
        if self.kind is VerdictKind.MATCH and self.student is not None:
            return f"match:{self.student.id}"
        return self.kind.value

    @classmethod
    def source_not_ready(cls) -> "Verdict":
        return cls(VerdictKind.SOURCE_NOT_READY)

    @classmethod
    def no_face(cls) -> "Verdict":
        return cls(VerdictKind.NO_FACE)

    @classmethod
    def unknown(cls, distance: float = math.inf) -> "Verdict":
        return cls(VerdictKind.UNKNOWN, distance=distance)

    @classmethod
    def matched(cls, student: Student, distance: float) -> "Verdict":
        return cls(VerdictKind.MATCH, student=student, distance=distance)


@dataclass(frozen=True)
class RecognitionSnapshot:
    state: ScanState
    subject: Optional[Student] = None
    distance: Optional[float] = None
    status_message: str = STATUS_INITIALIZING
    error: Optional[str] = None
    version: int = 0
    updated_at: datetime = datetime.fromtimestamp(0, tz=timezone.utc)

    @property
    def identified(self) -> bool:
        return self.state is ScanState.IDENTIFIED and self.subject is not None

    def to_dict(self) -> dict[str, Any]:
        subject = None
        if self.subject is not None:
            subject = {
                "id": self.subject.id,
                "name": self.subject.name,
                "class": self.subject.class_name,
                "gender": self.subject.gender,
            }
        return {
            "state": self.state.value,
            "subject": subject,
            "distance": self.distance,
            "status_message": self.status_message,
            "error": self.error,
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
        }


class RecognitionPolicy(Protocol):
    """Decides which verdict, if any, the state machine should act on."""

    def decide(self, verdict: Verdict) -> Optional[Verdict]:
        ...

    def reset(self) -> None:
        ...


class ImmediatePolicy:
    """Every tick's verdict supersedes the previous state."""

    def decide(self, verdict: Verdict) -> Optional[Verdict]:
        return verdict

    def reset(self) -> None:
        return None


class MajorityVotePolicy:
    """Accept a verdict only once it wins ``quorum`` of the last ``window`` ticks."""

    def __init__(self, window: int = 5, quorum: int = 3):
        self.window = max(1, int(window))
        self.quorum = min(self.window, max(1, int(quorum)))
        self._history: Deque[Verdict] = deque(maxlen=self.window)

    def decide(self, verdict: Verdict) -> Optional[Verdict]:
        if verdict.kind is VerdictKind.SOURCE_NOT_READY:
            self._history.clear()
            return verdict

        self._history.append(verdict)
        counts = Counter(item.key for item in self._history)
        if counts[verdict.key] >= self.quorum:
            return verdict
        return None

    def reset(self) -> None:
        self._history.clear()


def build_policy(name: str, window: int = 5, quorum: int = 3) -> RecognitionPolicy:
    if name.strip().lower() in {"majority", "majority-vote", "vote"}:
        return MajorityVotePolicy(window=window, quorum=quorum)
    return ImmediatePolicy()


class RecognitionState:
    def __init__(self, policy: Optional[RecognitionPolicy] = None):
        self.policy: RecognitionPolicy = policy or ImmediatePolicy()
        self.logger = setup_logger(self.__class__.__name__)
        self._snapshot = RecognitionSnapshot(state=ScanState.IDLE, updated_at=datetime.now(timezone.utc))
        self._listeners: List[Callable[[RecognitionSnapshot], None]] = []

    @property
    def state(self) -> ScanState:
        return self._snapshot.state

    @property
    def subject(self) -> Optional[Student]:
        return self._snapshot.subject if self._snapshot.identified else None

    def snapshot(self) -> RecognitionSnapshot:
        return self._snapshot

    def subscribe(self, listener: Callable[[RecognitionSnapshot], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def apply(self, verdict: Verdict) -> RecognitionSnapshot:
        if self._snapshot.error is not None:
            return self._snapshot

        decided = self.policy.decide(verdict)
        if decided is None:
            return self._snapshot

        if decided.kind is VerdictKind.MATCH and decided.student is not None:
            return self._transition(
                ScanState.IDENTIFIED,
                subject=decided.student,
                distance=decided.distance,
                message=f"Hello {decided.student.name}.",
            )
        if decided.kind is VerdictKind.UNKNOWN:
            distance = None if math.isinf(decided.distance) else decided.distance
            return self._transition(ScanState.SCANNING, distance=distance, message=STATUS_UNKNOWN)
        if decided.kind is VerdictKind.NO_FACE:
            return self._transition(ScanState.SCANNING, message=STATUS_NO_FACE)
        return self._transition(ScanState.IDLE, message=STATUS_INITIALIZING)

    def mark_ready(self) -> RecognitionSnapshot:
        if self._snapshot.error is not None:
            return self._snapshot
        return self._transition(ScanState.SCANNING, message=STATUS_READY)

    def fail(self, message: str) -> RecognitionSnapshot:
        self.policy.reset()
        return self._transition(ScanState.IDLE, message=message, error=message)

    def reset(self) -> RecognitionSnapshot:
        self.policy.reset()
        return self._transition(ScanState.IDLE, message=STATUS_INITIALIZING, force=True)

    def _transition(
        self,
        state: ScanState,
        subject: Optional[Student] = None,
        distance: Optional[float] = None,
        message: str = "",
        error: Optional[str] = None,
        force: bool = False,
    ) -> RecognitionSnapshot:
        current = self._snapshot
        previous_id = current.subject.id if current.subject is not None else None
        next_id = subject.id if subject is not None else None
        unchanged = (
            current.state is state
            and previous_id == next_id
            and current.status_message == message
            and current.error == error
        )
        if unchanged and not force:
            return current

        snapshot = RecognitionSnapshot(
            state=state,
            subject=subject,
            distance=distance,
            status_message=message,
            error=error,
            version=current.version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        self._snapshot = snapshot
        if current.state is not state or previous_id != next_id:
            self.logger.info("Recognition %s -> %s (%s)", current.state.value, state.value, message)

        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self.logger.exception("Recognition listener failed")
        return snapshot
