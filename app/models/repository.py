"""ORM model for source repositories connected to a workspace."""

from sqlalchemy import Column, Integer, String

from app.models.base import Base


class Repository(Base):
    """
    Repository registered by the integrations layer.

    The scan pipeline only reads it: workspace ownership, name for commit
    resolution and the URL the source fetcher clones from.
    """

    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(Integer, nullable=False, index=True)
    full_name = Column(String(512), nullable=False)
    default_branch = Column(String(255), nullable=False, default="main")
    clone_url = Column(String(2048), nullable=False)
