"""Database models for tasks and agent logs."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from .base import Base


class TaskModel(Base):
    """Task database model."""
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True)
    agent_id = Column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), index=True, nullable=False
    )
    description = Column(Text, nullable=False)
    context = Column(Text)
    status = Column(String(20), index=True, default="pending")  # pending, running, completed, error
    created_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    output = Column(Text)
    error = Column(Text)


class AgentLogModel(Base):
    """One log line emitted by an agent."""
    __tablename__ = "agent_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(
        String(36), ForeignKey("agents.id", ondelete="CASCADE"), index=True, nullable=False
    )
    task_id = Column(String(36))
    level = Column(String(10), default="info")
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
