import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

from .config import settings
from .database import as_utc, get_db, utcnow
from .models import SessionData, User, UserCreate, UserLogin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# Security
security = HTTPBearer(auto_error=False)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> bool:
    if not stored:
        return False
    try:
        return pwd_context.verify(password, stored)
    except ValueError:
        # unrecognised or corrupted hash
        return False


async def create_session(db, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    session = SessionData(
        session_token=token,
        user_id=user_id,
        expires_at=utcnow() + timedelta(days=settings.session_ttl_days),
    )
    await db.sessions.insert_one(session.model_dump())
    return token


async def _resolve_user(db, token: Optional[str], response: Optional[Response]) -> Optional[User]:
    if not token:
        return None

    session = await db.sessions.find_one({"session_token": token})
    if not session or as_utc(session["expires_at"]) < utcnow():
        if session:
            await db.sessions.delete_one({"session_token": token})
        if response is not None:
            response.delete_cookie("session_token")
        raise HTTPException(status_code=401, detail="Session expired")

    user = await db.users.find_one({"id": session["user_id"]}, {"_id": 0})
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return User(**user)


def _token(session_token, credentials):
    if session_token:
        return session_token
    if credentials:
        return credentials.credentials
    return None


# Authentication helpers
async def get_current_user(
    response: Response,
    session_token: Optional[str] = Cookie(None, alias="session_token"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db),
) -> User:
    token = _token(session_token, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return await _resolve_user(db, token, response)


async def get_optional_user(
    response: Response,
    session_token: Optional[str] = Cookie(None, alias="session_token"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db),
) -> Optional[User]:
    return await _resolve_user(db, _token(session_token, credentials), response)


def require_role(*roles):
    async def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(status_code=403, detail="Access denied")
        return current_user
    return checker


def _set_session_cookie(response: Response, token: str):
    response.set_cookie(
        "session_token",
        token,
        httponly=True,
        secure=True,
        samesite="none",
        path="/",
        max_age=settings.session_ttl_days * 24 * 3600,
    )


# Auth routes
@router.post("/register", status_code=201)
async def register(body: UserCreate, response: Response, db=Depends(get_db)):
    email = body.email.lower()
    if await db.users.find_one({"$or": [{"email": email}, {"username": body.username}]}):
        raise HTTPException(status_code=409, detail="Username or email already registered")

    user = User(
        username=body.username,
        email=email,
        display_name=body.display_name.strip(),
        role=body.role,
    )
    doc = user.model_dump()
    doc["password_hash"] = hash_password(body.password)
    try:
        await db.users.insert_one(doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Username or email already registered")

    token = await create_session(db, user.id)
    _set_session_cookie(response, token)
    logger.info("Registered user %s (%s)", user.username, user.id)
    return {"user": user, "session_token": token}


@router.post("/login")
async def login(body: UserLogin, response: Response, db=Depends(get_db)):
    doc = await db.users.find_one({"email": body.email.lower()}, {"_id": 0})
    if not doc or not verify_password(body.password, doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not doc.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")

    token = await create_session(db, doc["id"])
    _set_session_cookie(response, token)
    return {"user": User(**doc), "session_token": token}


@router.post("/logout")
async def logout(
    response: Response,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    # Delete session from database
    await db.sessions.delete_many({"user_id": current_user.id})

    # Clear cookie
    response.delete_cookie("session_token", path="/", secure=True, samesite="none")

    return {"message": "Logged out successfully"}


@router.get("/me", response_model=User)
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    return current_user
