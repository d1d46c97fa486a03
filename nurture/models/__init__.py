from nurture.models.conversation import ConversationRecord

__all__ = ["ConversationRecord"]
