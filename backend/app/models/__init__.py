# Re-export Beanie documents
from .chat import Conversation, ChatMessage, ReadReceipt
from .notification import Notification
