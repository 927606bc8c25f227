"""
Data models for the IndexNotifier service.

This module provides:
- IndexRecord, the pydantic model of one line of the package index
- SubscriptionModel, the SQLAlchemy table mapping chats to watched packages
"""

import json
from datetime import datetime, timezone
from html import escape
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import BigInteger, DateTime, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class IndexRecord(BaseModel):
    """
    One package version as stored in the index.

    Only ``name``, ``vers`` and ``yanked`` are interpreted; every other field
    (``deps``, ``cksum``, ``features``, ...) is kept as-is and passed through.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    name: str = Field(..., min_length=1, description="Package name")
    vers: str = Field(..., min_length=1, description="Version string")
    yanked: bool = Field(..., description="Whether this version is yanked")

    @field_validator("yanked", mode="before")
    @classmethod
    def validate_yanked(cls, v):
        # The index always writes a JSON boolean; "false"/0 mean a corrupt line.
        if not isinstance(v, bool):
            raise ValueError("yanked must be a boolean")
        return v

    @classmethod
    def from_line(cls, line: str) -> "IndexRecord":
        """
        Parse one index line.

        Raises:
            ValueError: if the line is not a JSON object matching the schema
        """
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("index line is not a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(str(e)) from e

    @property
    def metadata(self) -> Dict[str, Any]:
        """Fields of the line other than name, vers and yanked."""
        return dict(self.model_extra or {})

    def html_links(self) -> str:
        """Links to the version on crates.io, docs.rs and lib.rs."""
        name = escape(self.name)
        vers = escape(self.vers)
        return (
            f'[<a href="https://crates.io/crates/{name}/{vers}">crates.io</a> | '
            f'<a href="https://docs.rs/{name}/{vers}">docs.rs</a> | '
            f'<a href="https://lib.rs/crates/{name}">lib.rs</a>]'
        )

    def __str__(self) -> str:
        return f"{self.name}#{self.vers}"


class Base(DeclarativeBase):
    pass


class SubscriptionModel(Base):
    """A chat subscribed to one package."""

    __tablename__ = "subscriptions"

    chat_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    package: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (Index("idx_subscriptions_package", "package"),)

    def __repr__(self) -> str:
        return f"<SubscriptionModel chat_id={self.chat_id} package={self.package!r}>"
