from sqlalchemy import JSON, Column, DateTime, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB

from nurture.database import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class ConversationRecord(Base):
    """One row per end-user: profile plus the ordered transcript."""

    __tablename__ = "conversation_documents"

    user_id = Column(Text, primary_key=True)
    transport = Column(Text)  # twilio, ultramsg, web
    profile = Column(JSONDocument, nullable=False, default=dict)
    messages = Column(JSONDocument, nullable=False, default=list)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __mapper_args__ = {"version_id_col": version}
