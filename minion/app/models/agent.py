"""Database models for agents."""

from sqlalchemy import Column, DateTime, String

from .base import Base


class AgentModel(Base):
    """Agent database model."""
    __tablename__ = "agents"

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    status = Column(String(20), default="idle")  # idle, running, completed, error, stopped
    workspace_path = Column(String(1000), nullable=False)
    branch_name = Column(String(300), nullable=False)
    current_task_id = Column(String(36))
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_activity = Column(DateTime(timezone=True))
