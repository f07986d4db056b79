"""Student model."""

from typing_extensions import override

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Student(Base):
    __tablename__ = "students"  # pyright: ignore[reportUnannotatedClassAttribute]

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    grade: Mapped[str] = mapped_column(String, nullable=False)
    parent_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    school_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    qr_code: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    @override
    def __repr__(self) -> str:
        return f"<Student(id={self.id}, name={self.name}, school_id={self.school_id})>"
