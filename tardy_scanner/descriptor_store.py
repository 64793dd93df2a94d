from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, List, Mapping, Optional

from .exceptions import InvalidInput, SubscriptionFailure
from .logger import setup_logger
from .store import CollectionStore, Document, Unsubscribe
from .types import Student


def roster_stamp(enrolled: Iterable[Student]) -> str:
    """Content stamp over identities and reference descriptors, in roster order."""
    digest = hashlib.sha1()
    for student in enrolled:
        if student.descriptor is None:
            continue
        digest.update(student.id.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(student.descriptor.tobytes())
    return digest.hexdigest()


@dataclass(frozen=True)
class RosterSnapshot:
    students: tuple[Student, ...] = ()
    version: int = 0
    enrolled: tuple[Student, ...] = ()
    stamp: str = field(default_factory=lambda: roster_stamp(()))
    by_id: Mapping[str, Student] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def build(cls, students: Iterable[Student], version: int) -> "RosterSnapshot":
        ordered = tuple(students)
        enrolled = tuple(student for student in ordered if student.enrolled)
        return cls(
            students=ordered,
            version=version,
            enrolled=enrolled,
            stamp=roster_stamp(enrolled),
            by_id=MappingProxyType({student.id: student for student in ordered}),
        )


class DescriptorStore:
    """Read-through projection of the roster collection.

    Every change notification replaces the whole snapshot; readers holding a
    previous snapshot keep a consistent view.
    """

    def __init__(self, store: CollectionStore, path: str):
        self.store = store
        self.path = path
        self.logger = setup_logger(self.__class__.__name__)

        self._snapshot = RosterSnapshot()
        self._unsubscribe: Optional[Unsubscribe] = None
        self._listeners: List[Callable[[RosterSnapshot], None]] = []
        self.loaded = False
        self.error: Optional[SubscriptionFailure] = None

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        self.error = None
        self._unsubscribe = self.store.subscribe(self.path, self._on_change, self._on_error)

    def stop(self) -> None:
        if self._unsubscribe is None:
            return
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        unsubscribe()

    def snapshot(self) -> RosterSnapshot:
        return self._snapshot

    def current_roster(self) -> tuple[Student, ...]:
        return self._snapshot.enrolled

    def get(self, student_id: str) -> Optional[Student]:
        return self._snapshot.by_id.get(student_id)

    def add_listener(self, listener: Callable[[RosterSnapshot], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _parse(self, doc: Document) -> Student:
        try:
            return Student.from_document(doc)
        except InvalidInput as exc:
            self.logger.warning("Student %s has an unusable face descriptor: %s", doc.get("id"), exc)
            return Student.from_document({**doc, "faceDescriptor": None})

    def _on_change(self, items: list[Document]) -> None:
        students = [self._parse(doc) for doc in items]
        snapshot = RosterSnapshot.build(students, version=self._snapshot.version + 1)
        self._snapshot = snapshot
        self.loaded = True
        self.error = None
        self.logger.info(
            "Roster updated: %d students, %d enrolled (version %d)",
            len(snapshot.students),
            len(snapshot.enrolled),
            snapshot.version,
        )
        for listener in list(self._listeners):
            listener(snapshot)

    def _on_error(self, exc: Exception) -> None:
        failure = exc if isinstance(exc, SubscriptionFailure) else SubscriptionFailure(str(exc))
        self.error = failure
        self.loaded = True
        self.logger.error("Roster feed failed; keeping last snapshot: %s", failure)
