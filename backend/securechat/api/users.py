from typing import List

from fastapi import APIRouter, Depends
from pymongo.database import Database

from ..auth import auth_required
from ..core.store import UserStore
from ..db import get_db
from ..realtime import manager
from ..schemas import UserOut

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=List[UserOut])
def list_users(me: str = Depends(auth_required), db: Database = Depends(get_db)):
    return [UserOut(username=u) for u in UserStore(db).list_usernames(exclude=me)]


@router.get("/{username}/status")
def user_status(username: str, me: str = Depends(auth_required)):
    return {"username": username, "online": manager.is_online(username)}
