from fastapi import Depends
from pymongo.database import Database

from ..core import ConversationManager, MessageManager
from ..db import get_db


def get_conversations(db: Database = Depends(get_db)) -> ConversationManager:
    return ConversationManager(db)


def get_messages(db: Database = Depends(get_db)) -> MessageManager:
    return MessageManager(db)
