from typing import Any, List, Optional

from sqlalchemy import asc, select
from sqlalchemy.ext.asyncio import AsyncSession

from brdsync.models import Connection, WebhookRegistration


class ConnectionRepository:
    """Repository for Jira connections and their webhook registrations."""

    async def get(self, connection_id: str, db: AsyncSession) -> Optional[Connection]:
        """Get connection by ID."""
        result = await db.execute(
            select(Connection).filter(Connection.id == connection_id)
        )
        return result.scalar_one_or_none()

    async def get_by_user_and_site(
        self, user_id: str, remote_site_id: str, db: AsyncSession
    ) -> Optional[Connection]:
        result = await db.execute(
            select(Connection).filter(
                Connection.user_id == user_id,
                Connection.remote_site_id == remote_site_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_default(self, db: AsyncSession) -> Optional[Connection]:
        """Oldest active connection, used when a request names none."""
        result = await db.execute(
            select(Connection)
            .filter(Connection.is_active.is_(True))
            .order_by(asc(Connection.created_at))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_connections(
        self,
        db: AsyncSession,
        user_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Connection]:
        query = select(Connection)
        if user_id:
            query = query.filter(Connection.user_id == user_id)
        if active_only:
            query = query.filter(Connection.is_active.is_(True))
        result = await db.execute(query.order_by(asc(Connection.created_at)))
        return list(result.scalars().all())

    async def save(self, connection: Connection, db: AsyncSession) -> Connection:
        """Insert or update a connection."""
        db.add(connection)
        await db.commit()
        await db.refresh(connection)
        return connection

    async def update(
        self, connection: Connection, db: AsyncSession, **fields: Any
    ) -> Connection:
        for key, value in fields.items():
            setattr(connection, key, value)
        await db.commit()
        await db.refresh(connection)
        return connection

    # Webhook registrations

    async def create_webhook(
        self, registration: WebhookRegistration, db: AsyncSession
    ) -> WebhookRegistration:
        db.add(registration)
        await db.commit()
        await db.refresh(registration)
        return registration

    async def get_webhook(
        self, registration_id: str, db: AsyncSession
    ) -> Optional[WebhookRegistration]:
        result = await db.execute(
            select(WebhookRegistration).filter(
                WebhookRegistration.id == registration_id
            )
        )
        return result.scalar_one_or_none()

    async def list_webhooks(
        self,
        db: AsyncSession,
        connection_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[WebhookRegistration]:
        query = select(WebhookRegistration)
        if connection_id:
            query = query.filter(WebhookRegistration.connection_id == connection_id)
        if active_only:
            query = query.filter(WebhookRegistration.is_active.is_(True))
        result = await db.execute(query.order_by(asc(WebhookRegistration.created_at)))
        return list(result.scalars().all())

    async def get_active_webhook(
        self, connection_id: str, db: AsyncSession
    ) -> Optional[WebhookRegistration]:
        """Most recent active registration for a connection."""
        registrations = await self.list_webhooks(
            db, connection_id=connection_id, active_only=True
        )
        return registrations[-1] if registrations else None


connection_repository = ConnectionRepository()
