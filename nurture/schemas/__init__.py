from nurture.schemas.conversation import (
    ConversationDocument,
    MessageKind,
    OnboardingStep,
    Role,
    StoredMessage,
    UserProfile,
)
from nurture.schemas.inbound import InboundMessage, Transport, WebChatRequest

__all__ = [
    "ConversationDocument",
    "InboundMessage",
    "MessageKind",
    "OnboardingStep",
    "Role",
    "StoredMessage",
    "Transport",
    "UserProfile",
    "WebChatRequest",
]
