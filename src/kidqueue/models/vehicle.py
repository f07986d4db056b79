"""Vehicle model and its link to the students it picks up."""

from typing_extensions import override

from sqlalchemy import BigInteger, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Vehicle(Base):
    __tablename__ = "vehicles"  # pyright: ignore[reportUnannotatedClassAttribute]

    id: Mapped[str] = mapped_column(String, primary_key=True)
    parent_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    license_plate: Mapped[str] = mapped_column(String, nullable=False)
    # Uppercase alphanumerics only, used for plate lookups
    plate_key: Mapped[str] = mapped_column(String, nullable=False, index=True)
    make: Mapped[str | None] = mapped_column(String, nullable=True)
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    color: Mapped[str | None] = mapped_column(String, nullable=True)
    qr_code: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    @override
    def __repr__(self) -> str:
        return f"<Vehicle(id={self.id}, license_plate={self.license_plate})>"


class VehicleStudent(Base):
    __tablename__ = "vehicle_students"  # pyright: ignore[reportUnannotatedClassAttribute]

    vehicle_id: Mapped[str] = mapped_column(
        String, ForeignKey("vehicles.id", ondelete="CASCADE"), primary_key=True
    )
    student_id: Mapped[str] = mapped_column(String, primary_key=True)
    # Batch scans enqueue students in link order
    link_order: Mapped[int] = mapped_column(Integer, nullable=False)
