from fastapi import APIRouter, Depends
from pydantic import BaseModel

from codedrop.dependencies import get_current_user, get_storage
from codedrop.services.users import UserService
from codedrop.storage.base import Storage, UserRecord

router = APIRouter(prefix="/users", tags=["users"])


class UserProfile(BaseModel):
    id: str
    name: str
    email: str
    picture: str | None = None


def _user_body(user: UserRecord) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email, "picture": user.picture}


@router.post("")
def register_user(profile: UserProfile, storage: Storage = Depends(get_storage)):
    """Register a profile the auth gateway has already verified."""
    user = UserService(storage).register(
        id=profile.id, name=profile.name, email=profile.email, picture=profile.picture
    )
    return _user_body(user)


@router.get("/me")
def read_current_user(user: UserRecord = Depends(get_current_user)):
    return _user_body(user)
