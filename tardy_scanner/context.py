from __future__ import annotations

import asyncio
from typing import Callable, Optional

from .admin_service import StudentAdmin, UserAdmin
from .auth import AuthService
from .camera import CameraStream, VideoSource
from .config import (
    LOGS_COLLECTION,
    STUDENTS_COLLECTION,
    USERS_COLLECTION,
    Settings,
    collection_path,
    get_settings,
)
from .descriptor_store import DescriptorStore, RosterSnapshot
from .face_engine import FaceEngine, VisionService
from .logger import setup_logger
from .matcher import MatcherCache, MatcherHandle
from .store import CollectionStore, Document, create_store
from .types import Operator

VideoSourceFactory = Callable[[], VideoSource]


class ServiceContext:
    """Process-scoped services, built once at startup and passed to every consumer.

    ``init()`` may be awaited from any number of entry points; the work runs once.
    """

    def __init__(
        self,
        settings: Settings,
        store: CollectionStore,
        vision: VisionService,
        camera_factory: Optional[VideoSourceFactory] = None,
    ):
        self.settings = settings
        self.store = store
        self.vision = vision
        self.logger = setup_logger(self.__class__.__name__)

        self.students_path = collection_path(settings.app_id, STUDENTS_COLLECTION)
        self.logs_path = collection_path(settings.app_id, LOGS_COLLECTION)
        self.users_path = collection_path(settings.app_id, USERS_COLLECTION)

        self.auth = AuthService(store, self.users_path, settings)
        self.roster = DescriptorStore(store, self.students_path)
        self.matchers = MatcherCache(settings.match_threshold)
        self.student_admin = StudentAdmin(store, self.students_path, vision)
        self.user_admin = UserAdmin(store, self.users_path)
        self.camera_factory: VideoSourceFactory = camera_factory or self._default_camera

        self._init_task: Optional[asyncio.Future] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        vision: Optional[VisionService] = None,
        camera_factory: Optional[VideoSourceFactory] = None,
    ) -> "ServiceContext":
        settings = settings or get_settings()
        store = create_store(settings.database_url)
        vision = vision or FaceEngine(min_detection_confidence=settings.min_detection_confidence)
        return cls(settings, store, vision, camera_factory=camera_factory)

    def _default_camera(self) -> VideoSource:
        return CameraStream(
            camera_index=self.settings.camera_index,
            width=self.settings.frame_width,
            height=self.settings.frame_height,
            fps=self.settings.frame_fps,
        )

    @property
    def initialized(self) -> bool:
        task = self._init_task
        return task is not None and task.done() and not task.cancelled() and task.exception() is None

    async def init(self) -> None:
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _initialize(self) -> None:
        self.roster.start()
        await self.auth.ensure_bootstrap_admin()
        self.logger.info("Service context ready (app_id=%s)", self.settings.app_id)

    async def station_operator(self) -> Operator:
        """Operator for a standalone scanner: the configured token, else anonymous."""
        return await self.auth.ensure_initial_identity(self.settings.initial_auth_token or None)

    def matcher(self) -> tuple[MatcherHandle, RosterSnapshot]:
        snapshot = self.roster.snapshot()
        return self.matchers.handle_for(snapshot), snapshot

    async def incident_documents(self) -> list[Document]:
        return await self.store.list(self.logs_path)

    def close(self) -> None:
        self.roster.stop()
        self.store.close()
