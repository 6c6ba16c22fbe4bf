"""
Client registry backed by a relational store.

Maps client_id -> (api_key, allowed_origin). SQLite by default, any
SQLAlchemy URL works.
"""

import logging
from pathlib import Path
from typing import List, Optional

from sqlalchemy import Integer, String, create_engine, delete, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from src.domain.errors import ValidationError
from src.domain.models import ClientRecord
from src.security.sanitize import sanitize_client

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for registry tables."""


class ClientRow(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    api_key: Mapped[str] = mapped_column(String, nullable=False)
    allowed_origin: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    def to_record(self) -> ClientRecord:
        return ClientRecord(
            client_id=self.client_id,
            api_key=self.api_key,
            allowed_origin=self.allowed_origin or "",
        )


class ClientRegistry:
    """Registry of tenants and their credentials."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine: Optional[Engine] = None
        self._sessions: Optional[sessionmaker[Session]] = None

    def open(self) -> None:
        """Create the engine and schema. Safe to call more than once."""
        if self._engine is not None:
            return
        url = make_url(self.database_url)
        connect_args = {}
        if url.get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        self._engine = create_engine(self.database_url, connect_args=connect_args)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(self._engine, expire_on_commit=False)
        logger.info("Client registry opened at %s", url.render_as_string(hide_password=True))

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            logger.info("Client registry closed")
        self._engine = None
        self._sessions = None

    def __enter__(self) -> "ClientRegistry":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _session(self) -> Session:
        if self._sessions is None:
            raise RuntimeError("Client registry is not open")
        return self._sessions()

    def get(self, client_id: str) -> Optional[ClientRecord]:
        """Look up a client by id."""
        if not client_id:
            return None
        with self._session() as session:
            row = session.scalar(select(ClientRow).where(ClientRow.client_id == client_id))
            return row.to_record() if row else None

    def add(self, client_id: str, api_key: str, allowed_origin: str) -> ClientRecord:
        """Insert a new client."""
        if not client_id or sanitize_client(client_id) != client_id:
            raise ValidationError(
                "Client id may only contain letters, digits, '_' and '-'",
                code="invalid_client_id",
            )
        if not api_key:
            raise ValidationError("API key must not be empty", code="invalid_api_key")
        if not allowed_origin:
            raise ValidationError("Allowed origin must not be empty", code="invalid_origin")

        row = ClientRow(client_id=client_id, api_key=api_key, allowed_origin=allowed_origin)
        with self._session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ValidationError(
                    f"Client {client_id} already exists", code="client_exists"
                ) from exc
            logger.info("Client added: %s", client_id)
            return row.to_record()

    def all(self) -> List[ClientRecord]:
        with self._session() as session:
            rows = session.scalars(select(ClientRow).order_by(ClientRow.id))
            return [row.to_record() for row in rows]

    def delete(self, client_id: str) -> bool:
        """
        Remove a client. Returns False when it did not exist.

        Stored blobs are left in place.
        """
        with self._session() as session:
            result = session.execute(delete(ClientRow).where(ClientRow.client_id == client_id))
            session.commit()
        removed = result.rowcount > 0
        if removed:
            logger.info("Client deleted: %s", client_id)
        return removed
