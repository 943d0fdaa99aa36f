"""SQLAlchemy-backed tunnel store."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..common.exceptions import PersistenceError
from ..common.logging import get_logger
from ..forwarding.models import TunnelRecord
from .models import Base, TunnelRow

logger = get_logger(__name__)

_UNSET: Any = object()

# columns written by the forwarding core; created_at/updated_at are managed here
_RECORD_COLUMNS = (
    "name",
    "remote_host",
    "remote_port",
    "local_port",
    "local_bind_address",
    "ssh_user",
    "ssh_host",
    "ssh_port",
    "status",
    "author",
    "tags",
    "description",
    "model_registration_enabled",
    "model_id",
    "model_name",
    "model_api_base",
)


class TunnelStore:
    """Durable tunnel records in a single table.

    Every engine error surfaces as :class:`PersistenceError`; the forwarding
    core logs those and carries on.
    """

    def __init__(
        self, database_url: str = "sqlite:///data/portknox.db", echo: bool = False
    ):
        """Initialize store and create the schema if needed.

        Args:
            database_url: SQLAlchemy database URL
            echo: Log emitted SQL
        """
        self.database_url = database_url
        try:
            self._ensure_sqlite_directory(database_url)
            self.engine: Engine = create_engine(database_url, echo=echo)
            Base.metadata.create_all(self.engine)
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceError(f"Cannot open tunnel store: {e}") from e

        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        logger.info("Tunnel store ready", url=make_url(database_url).render_as_string())

    @staticmethod
    def _ensure_sqlite_directory(database_url: str) -> None:
        url = make_url(database_url)
        if url.get_backend_name() != "sqlite" or not url.database:
            return
        if url.database == ":memory:":
            return
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Tunnel store operation failed: {e}") from e
        finally:
            session.close()

    def upsert_tunnel(self, record: TunnelRecord) -> None:
        """Insert or update a record by id.

        Args:
            record: Record to write
        """
        values = record.model_dump(include=set(_RECORD_COLUMNS))
        values["status"] = record.status.value
        with self._session() as session:
            row = session.get(TunnelRow, record.id)
            if row is None:
                session.add(TunnelRow(id=record.id, **values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
        logger.debug("Persisted tunnel", tunnel_id=record.id, status=values["status"])

    def delete_tunnel(self, tunnel_id: str) -> bool:
        """Delete a record.

        Returns:
            True if a record was deleted
        """
        with self._session() as session:
            row = session.get(TunnelRow, tunnel_id)
            if row is None:
                return False
            session.delete(row)
        logger.debug("Deleted tunnel record", tunnel_id=tunnel_id)
        return True

    def get_tunnel(self, tunnel_id: str) -> TunnelRecord | None:
        with self._session() as session:
            row = session.get(TunnelRow, tunnel_id)
            return TunnelRecord.model_validate(row) if row is not None else None

    def list_all_tunnels(self) -> list[TunnelRecord]:
        """List every record, oldest first."""
        with self._session() as session:
            rows = session.scalars(
                select(TunnelRow).order_by(TunnelRow.created_at, TunnelRow.id)
            ).all()
            return [TunnelRecord.model_validate(row) for row in rows]

    def update_metadata(
        self,
        tunnel_id: str,
        *,
        author: str | None = _UNSET,
        tags: list[str] | None = _UNSET,
    ) -> TunnelRecord | None:
        """Edit the descriptive fields of a record without touching the rest.

        Args:
            tunnel_id: Record to edit
            author: New author, None clears it; omitted leaves it unchanged
            tags: New tags, None clears them; omitted leaves them unchanged

        Returns:
            The updated record, or None if it does not exist
        """
        with self._session() as session:
            row = session.get(TunnelRow, tunnel_id)
            if row is None:
                return None
            if author is not _UNSET:
                row.author = author
            if tags is not _UNSET:
                row.tags = list(tags) if tags else None
            session.flush()
            return TunnelRecord.model_validate(row)

    def dispose(self) -> None:
        self.engine.dispose()
