# ============================================================
# feeledger/core/security.py
#
# LEARNING NOTE: FeeLedger never logs anyone in. The identity
# service signs the JWT; this module only reads it.
#
#   Authorization: Bearer <jwt>
#     → verify_token()      signature, expiry, type == "access"
#     → get_current_user()  CurrentUser for the endpoint
#     → require_roles(...)  403 unless the role is allowed
#     → ensure_can_view()   students only see their own records
#
# CurrentUser.user_id is the `actor` stamped on payments, fines,
# discounts, upgrade logs and activity rows. For students it is
# also their student id.
# ============================================================

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from feeledger.core.config import settings

bearer_scheme = HTTPBearer()


class Role(str, Enum):
    admin      = "admin"        # templates, discounts, refunds, upgrades
    accountant = "accountant"   # counter payments, fines, custom fees
    student    = "student"      # pays online, reads own ledger


class TokenData(BaseModel):
    """Claims FeeLedger relies on. Anything else in the token is ignored."""
    user_id: str
    role: Role
    email: str
    full_name: str


class CurrentUser(TokenData):

    @property
    def is_student(self) -> bool:
        return self.role == Role.student

    def scoped_student_id(self, requested: Optional[str]) -> Optional[str]:
        """List filters: a student's query is always narrowed to themselves."""
        return self.user_id if self.is_student else requested


def ensure_can_view(user: CurrentUser, student_id: str, what: str = "records") -> None:
    if user.is_student and user.user_id != student_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"You can only access your own {what}",
        )


def create_access_token(data: TokenData, expires_minutes: Optional[int] = None) -> str:
    """For local tooling and tests; production tokens come from the identity service."""
    now = datetime.now(timezone.utc)
    lifetime = expires_minutes or settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    claims = {
        **data.model_dump(mode="json"),
        "iat": now,
        "exp": now + timedelta(minutes=lifetime),
        "type": "access",
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def _unauthorized(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=reason,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_token(token: str) -> TokenData:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise _unauthorized("Could not validate credentials")

    if claims.get("type") != "access":
        raise _unauthorized("Access token required")
    try:
        return TokenData.model_validate(claims)
    except ValidationError:
        # Signed by us but missing claims or carrying an unknown role
        raise _unauthorized("Token is missing required claims")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> CurrentUser:
    return CurrentUser(**verify_token(credentials.credentials).model_dump())


def require_roles(*allowed: Role):
    """
    LEARNING NOTE: a dependency factory. Each call returns a new
    dependency that runs get_current_user first:

        @router.post("/ledgers/{ledger_id}/fines")
        async def add_fine(user: CurrentUser = Depends(require_staff)):
    """
    allowed_values = tuple(dict.fromkeys(Role(r) for r in allowed))

    async def check_role(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in allowed_values:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {' or '.join(r.value for r in allowed_values)}",
            )
        return current_user
    return check_role


require_staff = require_roles(Role.admin, Role.accountant)
require_admin = require_roles(Role.admin)
