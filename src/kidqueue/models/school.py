"""School and user models."""

from typing_extensions import override

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class School(Base):
    __tablename__ = "schools"  # pyright: ignore[reportUnannotatedClassAttribute]

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    address: Mapped[str] = mapped_column(String, nullable=False, default="")
    phone_number: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    @override
    def __repr__(self) -> str:
        return f"<School(id={self.id}, name={self.name})>"


class User(Base):
    """Parent, teacher or admin account.

    Teachers and admins are attached to a school; parents usually are not.
    """

    __tablename__ = "users"  # pyright: ignore[reportUnannotatedClassAttribute]

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    school_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    @override
    def __repr__(self) -> str:
        return f"<User(id={self.id}, role={self.role})>"
