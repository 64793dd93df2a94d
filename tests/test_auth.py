import asyncio

import pytest

from tardy_scanner.auth import AuthService, require_role
from tardy_scanner.config import Settings, collection_path
from tardy_scanner.exceptions import AuthError, InvalidInput, NotAuthenticated, PermissionDenied
from tardy_scanner.types import Operator

USERS = collection_path("test-app", "users")


def make_auth(store, settings):
    return AuthService(store, USERS, settings)


def test_sign_in_with_password_sets_current_operator(store, settings):
    auth = make_auth(store, settings)
    seen = []
    auth.on_identity_change(seen.append)

    async def scenario():
        await auth.register_operator("Guru@Sekolah.id", "rahasia123")
        return await auth.sign_in("guru@sekolah.id", "rahasia123")

    operator = asyncio.run(scenario())

    assert operator.email == "guru@sekolah.id"
    assert operator.role == "teacher"
    assert auth.current_operator == operator
    assert auth.current_operator_email == "guru@sekolah.id"
    assert seen == [None, operator]

    auth.sign_out()
    assert auth.current_operator is None
    assert seen[-1] is None


def test_wrong_password_is_rejected(store, settings):
    auth = make_auth(store, settings)

    async def scenario():
        await auth.register_operator("guru@sekolah.id", "rahasia123")
        await auth.sign_in("guru@sekolah.id", "salah-sekali")

    with pytest.raises(AuthError):
        asyncio.run(scenario())
    assert auth.current_operator is None


def test_register_validates_input(store, settings):
    auth = make_auth(store, settings)

    with pytest.raises(InvalidInput):
        asyncio.run(auth.register_operator("not-an-email", "rahasia123"))
    with pytest.raises(InvalidInput):
        asyncio.run(auth.register_operator("guru@sekolah.id", "123"))
    with pytest.raises(InvalidInput):
        asyncio.run(auth.register_operator("guru@sekolah.id", "rahasia123", role="principal"))

    asyncio.run(auth.register_operator("guru@sekolah.id", "rahasia123"))
    with pytest.raises(InvalidInput):
        asyncio.run(auth.register_operator("GURU@sekolah.id", "rahasia456"))


def test_identity_without_record_defaults_to_teacher(store, settings):
    auth = make_auth(store, settings)
    operator = asyncio.run(auth.resolve_operator("ghost", email="ghost@sekolah.id"))
    assert operator.role == "teacher"
    assert operator.email == "ghost@sekolah.id"


def test_unreadable_record_defaults_to_teacher(store, settings):
    auth = make_auth(store, settings)
    asyncio.run(store.put(USERS, "u1", {"email": "kepala@sekolah.id", "role": "admin"}))
    store.fail_gets = True

    operator = asyncio.run(auth.resolve_operator("u1"))
    assert operator.role == "teacher"


def test_token_reflects_current_stored_role(store, settings):
    auth = make_auth(store, settings)

    async def scenario():
        operator = await auth.register_operator("guru@sekolah.id", "rahasia123")
        token = auth.issue_token(operator)
        await store.update(USERS, operator.uid, {"role": "admin"})
        return operator, await auth.authenticate_token(token)

    registered, resolved = asyncio.run(scenario())
    assert resolved.uid == registered.uid
    assert resolved.role == "admin"


def test_invalid_token_is_rejected(store, settings):
    auth = make_auth(store, settings)
    with pytest.raises(NotAuthenticated):
        asyncio.run(auth.authenticate_token("not-a-jwt"))


def test_initial_identity_falls_back_to_anonymous_once(store, settings):
    auth = make_auth(store, settings)

    async def scenario():
        first, second = await asyncio.gather(
            auth.ensure_initial_identity("garbage-token"),
            auth.ensure_initial_identity("garbage-token"),
        )
        return first, second

    first, second = asyncio.run(scenario())
    assert first is second
    assert first.anonymous
    assert first.role == "teacher"
    assert first.display_email == "Unknown"


def test_initial_identity_uses_valid_token(store, settings):
    auth = make_auth(store, settings)

    async def scenario():
        operator = await auth.register_operator("kepala@sekolah.id", "rahasia123", role="admin")
        return await auth.ensure_initial_identity(auth.issue_token(operator))

    operator = asyncio.run(scenario())
    assert operator.role == "admin"
    assert not operator.anonymous


def test_bootstrap_admin_is_created_once(store, settings):
    auth = make_auth(store, settings)

    async def scenario():
        created = await auth.ensure_bootstrap_admin()
        again = await auth.ensure_bootstrap_admin()
        return created, again, await store.list(USERS)

    created, again, users = asyncio.run(scenario())
    assert created.role == "admin"
    assert again is None
    assert len(users) == 1


def test_require_role():
    teacher = Operator(uid="u1", email="guru@sekolah.id")
    with pytest.raises(NotAuthenticated):
        require_role(None, "teacher")
    with pytest.raises(PermissionDenied):
        require_role(teacher, "admin")
    assert require_role(teacher, "teacher", "admin") is teacher


def test_no_admin_is_created_without_configured_password(store, settings):
    assert Settings(_env_file=None).bootstrap_admin_password == ""

    auth = make_auth(store, settings.model_copy(update={"bootstrap_admin_password": ""}))
    assert asyncio.run(auth.ensure_bootstrap_admin()) is None
    assert asyncio.run(store.list(USERS)) == []
