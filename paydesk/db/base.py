from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, List, TypeVar

from sqlalchemy import MetaData
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import DeclarativeBase

T = TypeVar("T")

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


@dataclass
class Page(Generic[T]):
    items: List[T]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


def insert_ignore(dialect_name: str, model: type[Base], values: dict[str, Any], conflict_cols: List[str]):
    """INSERT that silently skips rows colliding on ``conflict_cols``."""
    if dialect_name == "sqlite":
        return sqlite.insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_cols)
    if dialect_name == "postgresql":
        return postgresql.insert(model).values(**values).on_conflict_do_nothing(index_elements=conflict_cols)
    # MySQL / MariaDB
    return mysql.insert(model).values(**values).prefix_with("IGNORE")
