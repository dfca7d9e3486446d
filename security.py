"""
Authentication and the per-request session context.

A `Session` is built from the bearer token on every request and handed to
the lifecycle and chat code, which never look at ambient state. Logging out
revokes the token's `jti`, ending the session server side.
"""
import logging
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict

from database import get_db, to_naive_utc, utcnow
from errors import AuthError, PermissionDeniedError

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("JWT_SECRET", "change-this-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login-ngo", auto_error=False)


class Session(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: ObjectId
    role: str
    name: str
    email: str
    token_id: str
    expires_at: datetime

    @property
    def is_restaurant(self) -> bool:
        return self.role == "restaurant"

    @property
    def is_ngo(self) -> bool:
        return self.role == "ngo"


# Helpers

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_access_token(user: dict, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user["_id"]),
        "role": user.get("role"),
        "jti": uuid.uuid4().hex,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise AuthError("Could not validate credentials")
    if not payload.get("sub") or not payload.get("jti"):
        raise AuthError("Could not validate credentials")
    return payload


def revoke_session(db, session: Session) -> None:
    db["revoked_token"].update_one(
        {"jti": session.token_id},
        {"$setOnInsert": {"jti": session.token_id, "expiresAt": session.expires_at}},
        upsert=True,
    )
    logger.info("Session %s for user %s revoked", session.token_id, session.user_id)


# Dependency: current session
def get_session(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)) -> Session:
    if not token:
        raise AuthError("Not authenticated")
    payload = decode_access_token(token)
    if db["revoked_token"].find_one({"jti": payload["jti"]}):
        raise AuthError("Session has ended, please login again")
    try:
        user = db["user"].find_one({"_id": ObjectId(payload["sub"])})
    except InvalidId:
        user = None
    if not user:
        raise AuthError("Could not validate credentials")
    expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
    return Session(
        user_id=user["_id"],
        role=user.get("role"),
        name=user.get("name", ""),
        email=user.get("email", ""),
        token_id=payload["jti"],
        expires_at=to_naive_utc(expires_at),
    )


# Role guard
def require_role(*roles) -> Callable:
    def _guard(session: Session = Depends(get_session)) -> Session:
        if session.role not in roles:
            raise PermissionDeniedError("Only %s accounts can do this" % " or ".join(roles))
        return session
    return _guard


# Google sign-in

def verify_google_credential(credential: str) -> dict:
    client_id = os.getenv("GOOGLE_CLIENT_ID")
    if not client_id:
        raise HTTPException(status_code=503, detail="Google sign-in is not configured")
    try:
        claims = google_id_token.verify_oauth2_token(credential, google_requests.Request(), client_id)
    except ValueError as exc:
        logger.info("Rejected Google credential: %s", exc)
        raise AuthError("Invalid Google credential")
    if not claims.get("email"):
        raise AuthError("Google account has no email address")
    return claims


def get_google_verifier() -> Callable[[str], dict]:
    return verify_google_credential


def purge_expired_revocations(db) -> int:
    result = db["revoked_token"].delete_many({"expiresAt": {"$lt": utcnow()}})
    return result.deleted_count
