import logging
from datetime import datetime, timedelta

import bcrypt
import jwt
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from . import config
from .audit import log_event
from .db import get_db
from .models import utcnow
from .schemas import LoginIn, RegisterIn, TokenOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])
security = HTTPBearer()

MIN_PASSWORD_LENGTH = 8


def make_hash(pw: str) -> str:
    return bcrypt.hashpw(pw.encode(), bcrypt.gensalt()).decode()


def verify_hash(pw: str, ph: str) -> bool:
    return bcrypt.checkpw(pw.encode(), ph.encode())


def create_token(username: str) -> str:
    payload = {
        "sub": username,
        "iat": datetime.utcnow(),
        "exp": datetime.utcnow() + timedelta(hours=config.JWT_EXPIRE_HOURS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def decode_token(token: str) -> str:
    try:
        data = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
        return data["sub"]
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=401, detail="invalid token")


def auth_required(creds: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """Resolve the bearer token to the caller's username."""
    return decode_token(creds.credentials)


@router.post("/register", response_model=TokenOut, status_code=201)
def register(data: RegisterIn, db: Database = Depends(get_db)):
    username = data.username.strip()
    if not username or not data.password or len(data.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"invalid payload, password must be at least {MIN_PASSWORD_LENGTH} characters")
    if db.users.find_one({"username": username}):
        raise HTTPException(400, "username exists")

    try:
        db.users.insert_one({
            "username": username,
            "password_hash": make_hash(data.password),
            "created_at": utcnow(),
        })
    except DuplicateKeyError:
        raise HTTPException(400, "username exists")

    log_event(db, username, "REGISTER")
    return {"token": create_token(username), "username": username}


@router.post("/login", response_model=TokenOut)
def login(data: LoginIn, db: Database = Depends(get_db)):
    username = data.username.strip()
    user = db.users.find_one({"username": username})
    if not user or not verify_hash(data.password, user["password_hash"]):
        logger.info("Failed login for %s", username)
        raise HTTPException(401, "invalid credentials")
    return {"token": create_token(username), "username": username}
