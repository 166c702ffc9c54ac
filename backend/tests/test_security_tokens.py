import pytest
from fastapi import HTTPException
from jose import jwt

from feeledger.core.config import settings
from feeledger.core.security import (
    CurrentUser,
    Role,
    TokenData,
    create_access_token,
    ensure_can_view,
    require_roles,
    verify_token,
)

pytestmark = pytest.mark.anyio


def _token_data(role="accountant"):
    return TokenData(
        user_id="11111111-1111-1111-1111-111111111111",
        role=role,
        email="accounts@example.com",
        full_name="Accounts Desk",
    )


def test_verify_token_accepts_access_tokens():
    token = create_access_token(_token_data())

    payload = verify_token(token)
    assert payload.user_id == "11111111-1111-1111-1111-111111111111"
    assert payload.role == "accountant"


def test_verify_token_rejects_other_token_types():
    refresh_like = jwt.encode(
        {**_token_data().model_dump(), "type": "refresh"},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )

    with pytest.raises(HTTPException) as exc:
        verify_token(refresh_like)
    assert exc.value.status_code == 401


def test_verify_token_rejects_wrong_signature():
    forged = jwt.encode(
        {**_token_data().model_dump(), "type": "access"},
        "not-the-secret",
        algorithm=settings.JWT_ALGORITHM,
    )

    with pytest.raises(HTTPException):
        verify_token(forged)


async def test_require_roles_lets_allowed_roles_through():
    check = require_roles("admin", "accountant")
    user = CurrentUser(**_token_data().model_dump())

    assert await check(current_user=user) is user


async def test_require_roles_refuses_other_roles():
    check = require_roles("admin")
    user = CurrentUser(**_token_data(role="student").model_dump())

    with pytest.raises(HTTPException) as exc:
        await check(current_user=user)
    assert exc.value.status_code == 403


def test_verify_token_rejects_unknown_roles():
    token = jwt.encode(
        {**_token_data().model_dump(mode="json"), "role": "janitor", "type": "access"},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(HTTPException) as exc:
        verify_token(token)
    assert exc.value.status_code == 401


def test_students_are_scoped_to_themselves():
    student = CurrentUser(user_id="student-1", role=Role.student, email="s@example.com",
                          full_name="S")
    staff = CurrentUser(**_token_data().model_dump())

    assert student.scoped_student_id("student-2") == "student-1"
    assert student.scoped_student_id(None) == "student-1"
    assert staff.scoped_student_id("student-2") == "student-2"

    ensure_can_view(student, "student-1")
    ensure_can_view(staff, "student-2")
    with pytest.raises(HTTPException) as exc:
        ensure_can_view(student, "student-2", "payments")
    assert exc.value.status_code == 403
    assert "payments" in exc.value.detail
