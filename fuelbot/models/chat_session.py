from sqlalchemy import JSON, Column, DateTime, Text, func

from fuelbot.database import Base


class ChatSessionRow(Base):
    __tablename__ = "chat_sessions"

    chat_id = Column(Text, primary_key=True)
    user_id = Column(Text, primary_key=True)
    payload = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
