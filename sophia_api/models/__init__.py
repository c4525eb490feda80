from sophia_api.models.agent import Agent
from sophia_api.models.conversation_log import ConversationLog
from sophia_api.models.document_session import DocumentSession
from sophia_api.models.message_forward import MessageForward
from sophia_api.models.platform_user import PlatformUser
from sophia_api.models.processed_update import ProcessedUpdate

__all__ = [
    "Agent",
    "PlatformUser",
    "ProcessedUpdate",
    "DocumentSession",
    "MessageForward",
    "ConversationLog",
]
