from zapflow.models.agent import AiChatAgent, AiKnowledgeDocument
from zapflow.models.conversation import Conversation
from zapflow.models.learning import AiConversationContext, AiFaqEntry, AiFeedback, AiLearningPattern
from zapflow.models.message import Message
from zapflow.models.session import WhatsappSession

__all__ = [
    "WhatsappSession",
    "Conversation",
    "Message",
    "AiChatAgent",
    "AiKnowledgeDocument",
    "AiFeedback",
    "AiFaqEntry",
    "AiLearningPattern",
    "AiConversationContext",
]
