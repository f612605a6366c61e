from __future__ import annotations

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from app.api.dependencies.auth import get_current_user
from app.core.security import create_access_token, verify_token
from app.utils.enums import Role

pytestmark = pytest.mark.anyio


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


async def test_valid_token_loads_user(db_session, factory):
    user = await factory.user(role=Role.trainer)
    token = create_access_token(str(user.id), role=user.role)

    assert verify_token(token) == str(user.id)
    loaded = await get_current_user(_bearer(token), db_session)
    assert loaded.id == user.id


@pytest.mark.parametrize("token", [None, "not-a-jwt", create_access_token("not-a-uuid")])
async def test_bad_credentials_are_rejected(db_session, token):
    credentials = _bearer(token) if token else None

    with pytest.raises(HTTPException) as exc_info:
        await get_current_user(credentials, db_session)

    assert exc_info.value.status_code == 401


async def test_inactive_users_are_rejected(db_session, factory):
    user = await factory.user()
    user.is_active = False
    await db_session.commit()

    with pytest.raises(HTTPException):
        await get_current_user(_bearer(create_access_token(str(user.id))), db_session)
