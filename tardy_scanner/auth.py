from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from .config import ROLE_ADMIN, ROLE_TEACHER, ROLES, Settings
from .exceptions import AuthError, InvalidInput, NotAuthenticated, PermissionDenied, StoreError
from .logger import setup_logger
from .store import CollectionStore, Document
from .types import Operator

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

IdentityListener = Callable[[Optional[Operator]], None]


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def require_role(operator: Optional[Operator], *allowed_roles: str) -> Operator:
    if operator is None:
        raise NotAuthenticated("Sign in required.")
    if operator.role not in set(allowed_roles):
        raise PermissionDenied(f"Role '{operator.role}' is not allowed for this action.")
    return operator


class AuthService:
    """Operator identities, password sign-in and bearer tokens.

    Operator records live in the users collection keyed by uid. An identity
    with no readable record is treated as a teacher.
    """

    def __init__(self, store: CollectionStore, users_path: str, settings: Settings):
        self.store = store
        self.users_path = users_path
        self.settings = settings
        self.logger = setup_logger(self.__class__.__name__)

        self._current: Optional[Operator] = None
        self._listeners: List[IdentityListener] = []
        self._initial: Optional[asyncio.Future] = None

    @property
    def current_operator(self) -> Optional[Operator]:
        return self._current

    @property
    def current_operator_email(self) -> Optional[str]:
        return self._current.display_email if self._current is not None else None

    def on_identity_change(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self._current)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _set_current(self, operator: Optional[Operator]) -> None:
        self._current = operator
        for listener in list(self._listeners):
            try:
                listener(operator)
            except Exception:
                self.logger.exception("Identity listener failed")

    def sign_out(self) -> None:
        if self._current is not None:
            self.logger.info("Operator %s signed out", self._current.display_email)
        self._set_current(None)

    def issue_token(self, operator: Operator) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": operator.uid,
            "email": operator.email,
            "role": operator.role,
            "anon": operator.anonymous,
            "iat": now,
            "exp": now + timedelta(minutes=self.settings.access_token_minutes),
        }
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)

    def decode_token(self, token: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(token, self.settings.jwt_secret, algorithms=[self.settings.jwt_algorithm])
        except JWTError as exc:
            raise NotAuthenticated("Invalid or expired token.") from exc
        if not payload.get("sub"):
            raise NotAuthenticated("Token carries no subject.")
        return payload

    async def resolve_operator(self, uid: str, email: Optional[str] = None, anonymous: bool = False) -> Operator:
        try:
            doc = await self.store.get(self.users_path, uid)
        except StoreError as exc:
            self.logger.error("Failed to load operator %s; defaulting to teacher: %s", uid, exc)
            doc = None
        if doc is None:
            return Operator(uid=uid, email=email, role=ROLE_TEACHER, anonymous=anonymous)

        role = str(doc.get("role") or ROLE_TEACHER)
        if role not in ROLES:
            role = ROLE_TEACHER
        return Operator(uid=uid, email=doc.get("email") or email, role=role, anonymous=anonymous)

    async def authenticate_token(self, token: str) -> Operator:
        payload = self.decode_token(token)
        return await self.resolve_operator(
            str(payload["sub"]),
            email=payload.get("email"),
            anonymous=bool(payload.get("anon", False)),
        )

    async def find_by_email(self, email: str) -> Optional[Document]:
        target = normalize_email(email)
        for doc in await self.store.list(self.users_path):
            if normalize_email(str(doc.get("email") or "")) == target:
                return doc
        return None

    async def verify_credentials(self, email: str, password: str) -> Operator:
        doc = await self.find_by_email(email)
        stored_hash = str(doc.get("passwordHash") or "") if doc is not None else ""
        if doc is None or not await asyncio.to_thread(verify_password, password, stored_hash):
            self.logger.warning("Failed sign-in for %s", normalize_email(email))
            raise AuthError("Login failed. Check your credentials.")
        return await self.resolve_operator(str(doc["id"]), email=doc.get("email"))

    async def sign_in(self, email: str, password: str) -> Operator:
        operator = await self.verify_credentials(email, password)
        self._set_current(operator)
        self.logger.info("Operator %s signed in as %s", operator.display_email, operator.role)
        return operator

    async def sign_in_with_token(self, token: str) -> Operator:
        try:
            operator = await self.authenticate_token(token)
        except NotAuthenticated as exc:
            raise AuthError(f"Token sign-in failed: {exc}") from exc
        self._set_current(operator)
        return operator

    async def sign_in_anonymously(self) -> Operator:
        operator = await self.resolve_operator(uuid.uuid4().hex, anonymous=True)
        self._set_current(operator)
        self.logger.info("Anonymous operator %s signed in", operator.uid)
        return operator

    async def ensure_initial_identity(self, initial_token: Optional[str] = None) -> Operator:
        """Sign in once at startup: the provided token if any, otherwise anonymously."""
        if self._initial is None:
            self._initial = asyncio.ensure_future(self._initial_sign_in(initial_token))
        return await asyncio.shield(self._initial)

    async def _initial_sign_in(self, initial_token: Optional[str]) -> Operator:
        if initial_token:
            try:
                return await self.sign_in_with_token(initial_token)
            except AuthError as exc:
                self.logger.warning("Initial token rejected, falling back to anonymous sign-in: %s", exc)
        return await self.sign_in_anonymously()

    async def register_operator(self, email: str, password: str, role: str = ROLE_TEACHER) -> Operator:
        email = normalize_email(email)
        if not email or "@" not in email:
            raise InvalidInput("A valid email is required.")
        if len(password or "") < 6:
            raise InvalidInput("Password must be at least 6 characters.")
        if role not in ROLES:
            raise InvalidInput(f"Unknown role '{role}'.")
        if await self.find_by_email(email) is not None:
            raise InvalidInput(f"Operator {email} already exists.")

        uid = uuid.uuid4().hex
        await self.store.put(
            self.users_path,
            uid,
            {"email": email, "role": role, "passwordHash": await asyncio.to_thread(hash_password, password)},
        )
        self.logger.info("Registered operator %s as %s", email, role)
        return Operator(uid=uid, email=email, role=role)

    async def ensure_bootstrap_admin(self) -> Optional[Operator]:
        email = normalize_email(self.settings.bootstrap_admin_email)
        if not email or not self.settings.bootstrap_admin_password:
            users = await self.store.list(self.users_path)
            if not any(doc.get("role") == ROLE_ADMIN for doc in users):
                self.logger.warning(
                    "No admin operator exists. Create one with `run.py create-operator --role admin` "
                    "or set TARDY_BOOTSTRAP_ADMIN_PASSWORD."
                )
            return None
        existing = await self.find_by_email(email)
        if existing is not None:
            return None
        return await self.register_operator(email, self.settings.bootstrap_admin_password, role=ROLE_ADMIN)
