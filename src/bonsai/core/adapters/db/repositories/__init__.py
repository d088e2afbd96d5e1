"""Async repositories for domain entities."""

from __future__ import annotations

from bonsai.core.adapters.db.repositories.approvals import ApprovalRepository
from bonsai.core.adapters.db.repositories.base import (
    ClosingAwareSessionFactory,
    RepositoryBase,
    RepositoryClosing,
)
from bonsai.core.adapters.db.repositories.messages import MessageRepository
from bonsai.core.adapters.db.repositories.projects import ProjectRepository
from bonsai.core.adapters.db.repositories.runs import RunRepository
from bonsai.core.adapters.db.repositories.work_items import Lease, WorkItemRepository

__all__ = [
    "ApprovalRepository",
    "ClosingAwareSessionFactory",
    "Lease",
    "MessageRepository",
    "ProjectRepository",
    "RepositoryBase",
    "RepositoryClosing",
    "RunRepository",
    "WorkItemRepository",
]
