from app.models.company import Company
from app.models.contact import Contact
from app.models.conversation import Conversation
from app.models.conversation_history import ConversationHistory
from app.models.department import Department
from app.models.message import Message
from app.models.message_reaction import MessageReaction
from app.models.profile import Profile
from app.models.whatsapp_connection import WhatsAppConnection

__all__ = [
    "Company",
    "WhatsAppConnection",
    "Department",
    "Profile",
    "Contact",
    "Conversation",
    "ConversationHistory",
    "Message",
    "MessageReaction",
]
