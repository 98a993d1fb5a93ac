from .conversations import ConversationManager
from .messages import MessageManager

__all__ = ["ConversationManager", "MessageManager"]
