"""ORM mapping of the tunnel table."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TunnelRow(Base):
    __tablename__ = "tunnels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    remote_host: Mapped[str] = mapped_column(String, nullable=False)
    remote_port: Mapped[int] = mapped_column(Integer, nullable=False)
    local_port: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    local_bind_address: Mapped[str] = mapped_column(
        String, nullable=False, default="127.0.0.1"
    )
    ssh_user: Mapped[str] = mapped_column(String, nullable=False)
    ssh_host: Mapped[str] = mapped_column(String, nullable=False)
    ssh_port: Mapped[int] = mapped_column(Integer, nullable=False, default=22)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="active", index=True
    )

    author: Mapped[str | None] = mapped_column(String, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)

    model_registration_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    model_id: Mapped[str | None] = mapped_column(String, nullable=True)
    model_name: Mapped[str | None] = mapped_column(String, nullable=True)
    model_api_base: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )
