from __future__ import annotations

from pathlib import Path

from sqlmodel import col, select

from bonsai.core.adapters.db.repositories.base import RepositoryBase
from bonsai.core.adapters.db.schema import Project, Repo, WorkItem


class ProjectRepository(RepositoryBase):
    """Repositories and the projects that point work items at them."""

    async def add_repo(
        self,
        path: str | Path,
        *,
        name: str | None = None,
        trunk_branch: str = "main",
        remote_name: str = "origin",
    ) -> Repo:
        resolved = Path(path).resolve()
        async with self._lock:
            async with self._get_session() as session:
                repo = Repo(
                    name=name or resolved.name,
                    path=str(resolved),
                    trunk_branch=trunk_branch,
                    remote_name=remote_name,
                )
                session.add(repo)
                await session.commit()
                await session.refresh(repo)
                return repo

    async def add_project(
        self, name: str, *, repo_id: str, agent_name: str | None = None
    ) -> Project:
        async with self._lock:
            async with self._get_session() as session:
                project = Project(name=name, repo_id=repo_id, agent_name=agent_name)
                session.add(project)
                await session.commit()
                await session.refresh(project)
                return project

    async def get_repo(self, repo_id: str) -> Repo | None:
        async with self._get_session() as session:
            return await session.get(Repo, repo_id)

    async def get_project(self, project_id: str) -> Project | None:
        async with self._get_session() as session:
            return await session.get(Project, project_id)

    async def list_projects(self) -> list[Project]:
        async with self._get_session() as session:
            result = await session.execute(select(Project).order_by(col(Project.created_at).asc()))
            return list(result.scalars().all())

    async def get_repo_for_item(self, work_item_id: str) -> Repo | None:
        async with self._get_session() as session:
            result = await session.execute(
                select(Repo)
                .join(Project, col(Project.repo_id) == col(Repo.id))
                .join(WorkItem, col(WorkItem.project_id) == col(Project.id))
                .where(col(WorkItem.id) == work_item_id)
            )
            return result.scalars().first()
