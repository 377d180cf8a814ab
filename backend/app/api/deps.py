"""FastAPI dependencies for the API layer."""

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.conversations import ConversationDirectory
from app.services.delivery import DeliveryRouter
from app.services.identity import IdentityGate, UserIdentity
from app.services.message_log import MessageLog
from app.services.presence import PresenceTracker
from app.services.realtime import get_delivery_router, get_presence_tracker
from app.services.social_graph import SocialGraphManager

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> UserIdentity:
    """Resolve the caller from the ``Authorization: Bearer`` header."""

    token = credentials.credentials if credentials is not None else None
    return IdentityGate(db).authenticate(token)


def get_social_graph(
    db: Session = Depends(get_db),
    router: DeliveryRouter = Depends(get_delivery_router),
    presence: PresenceTracker = Depends(get_presence_tracker),
) -> SocialGraphManager:
    return SocialGraphManager(db, router=router, presence=presence)


def get_conversation_directory(db: Session = Depends(get_db)) -> ConversationDirectory:
    return ConversationDirectory(db)


def get_message_log(
    db: Session = Depends(get_db),
    router: DeliveryRouter = Depends(get_delivery_router),
) -> MessageLog:
    return MessageLog(db, router=router)
