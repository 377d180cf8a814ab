from fastapi import APIRouter

from app.api.conversations import router as conversations_router
from app.api.friends import router as friends_router
from app.api.users import router as users_router

router = APIRouter()

router.include_router(users_router)
router.include_router(friends_router)
router.include_router(conversations_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the Nexus API"}
