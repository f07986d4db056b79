"""Declarative base shared by all KidQueue tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
