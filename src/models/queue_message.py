"""Rows of the durable notification queue."""

from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime

from src.database import Base, utcnow


class QueueMessage(Base):
    __tablename__ = "queue_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False)
    dequeue_count = Column(Integer, default=0, nullable=False)
    visible_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    dead_lettered = Column(Boolean, default=False, nullable=False)
    last_error = Column(Text, nullable=True)
    enqueued_at = Column(DateTime, default=utcnow, nullable=False)
