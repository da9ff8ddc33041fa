"""The two record stores a sync pass reads from and writes to."""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.core.exceptions import NotFoundError
from brdsync.repositories.brd_repository import brd_repository
from brdsync.services.jira.client import JiraClient


class LocalRecordStore(ABC):
    """Read and write BRDs as camelCase records."""

    @abstractmethod
    async def get(self, local_id: str) -> Optional[Dict[str, Any]]:
        """Return the record, or None if it does not exist (or was deleted)."""

    @abstractmethod
    async def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Create a BRD and return the stored record."""

    @abstractmethod
    async def update(self, local_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial record and return the stored record."""


class RemoteRecordStore(ABC):
    """Read and write Jira issues as flat records."""

    async def check_connection(self, connection_id: str) -> None:
        """Raise if the connection cannot be used; the default accepts all."""

    @abstractmethod
    async def get(self, connection_id: str, key: str) -> Optional[Dict[str, Any]]:
        """Return the issue record, or None if it does not exist."""

    @abstractmethod
    async def create(
        self, connection_id: str, project_key: str, record: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Create an Epic and return its record (with ``id`` and ``key``)."""

    @abstractmethod
    async def update(self, connection_id: str, key: str, changes: Dict[str, Any]) -> None:
        """Apply a partial record."""


class DatabaseBRDStore(LocalRecordStore):
    """BRDs in the ``brds`` table."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def get(self, local_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            brd = await brd_repository.get(local_id, db)
            return brd.to_record() if brd else None

    async def create(self, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as db:
            brd = await brd_repository.create(db, record)
            return brd.to_record()

    async def update(self, local_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as db:
            brd = await brd_repository.get(local_id, db)
            if brd is None:
                raise NotFoundError("BRD", local_id)
            brd = await brd_repository.update(brd, db, changes)
            return brd.to_record()


class JiraRemoteStore(RemoteRecordStore):
    """Issues on Jira Cloud."""

    def __init__(self, client: JiraClient, issue_type: str = "Epic"):
        self.client = client
        self.issue_type = issue_type

    async def check_connection(self, connection_id: str) -> None:
        await self.client.credentials.get_connection(connection_id)

    async def get(self, connection_id: str, key: str) -> Optional[Dict[str, Any]]:
        return await self.client.get_issue(connection_id, key)

    async def create(
        self, connection_id: str, project_key: str, record: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self.client.create_issue(
            connection_id, project_key, record, issue_type=self.issue_type
        )

    async def update(self, connection_id: str, key: str, changes: Dict[str, Any]) -> None:
        await self.client.update_issue(connection_id, key, changes)
