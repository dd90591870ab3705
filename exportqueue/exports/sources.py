### exportqueue/exports/sources.py

"""
List sources for exports.

A list source is a countable, pageable view over records. A job never holds a
source object; it stores a ``ListReference`` (source name, filters, sort) and
the runner rebuilds the same list on every tick through the registry.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy import func, inspect, select
from sqlalchemy.orm import Session

from exportqueue.exports.exceptions import InvalidConfigurationError
from exportqueue.exports.serializer import format_value
from exportqueue.utils.logger import get_logger

logger = get_logger(__name__)

Record = Mapping[str, Any]


def record_value(record: Record, field: str) -> str:
    """Formatted value of ``field``; missing fields render as an empty string."""
    return format_value(record.get(field))


class ListReference(BaseModel):
    """Everything needed to rebuild a list later: which source, how filtered and sorted"""

    source: str = Field(..., min_length=1, description="Registered source name")
    filters: Dict[str, Any] = Field(default_factory=dict)
    sort: List[str] = Field(
        default_factory=list,
        description="Field names, prefixed with '-' for descending order",
    )


class ListSource(ABC):
    """Filterable, sortable and countable collection of records."""

    @abstractmethod
    def count(self) -> int:
        ...

    @abstractmethod
    def fetch(self, offset: int, limit: int) -> List[Record]:
        ...


class SequenceListSource(ListSource):
    """List source over records already held in memory."""

    def __init__(self, records: Sequence[Record]):
        self.records = records

    def count(self) -> int:
        return len(self.records)

    def fetch(self, offset: int, limit: int) -> List[Record]:
        return [dict(r) for r in self.records[offset:offset + limit]]


class QueryListSource(ListSource):
    """
    List source over a mapped SQLAlchemy model.

    Filters are equality matches (a list value becomes ``IN``); sort keys are
    column names with an optional ``-`` prefix. The primary key is always
    appended to the ordering so pages never overlap.
    """

    def __init__(
        self,
        db: Session,
        model,
        filters: Optional[Dict[str, Any]] = None,
        sort: Optional[List[str]] = None,
    ):
        self.db = db
        self.model = model
        mapper = inspect(model)
        self._columns = {attr.key: getattr(model, attr.key) for attr in mapper.column_attrs}
        self._primary_keys = [getattr(model, col.key) for col in mapper.primary_key]

        stmt = select(model)
        for name, value in (filters or {}).items():
            column = self._column(name, "filter")
            if isinstance(value, (list, tuple)):
                stmt = stmt.where(column.in_(value))
            else:
                stmt = stmt.where(column == value)
        self._filtered = stmt

        ordering = []
        for key in sort or []:
            descending = key.startswith("-")
            column = self._column(key.lstrip("-"), "sort")
            ordering.append(column.desc() if descending else column.asc())
        ordering.extend(pk.asc() for pk in self._primary_keys)
        self._ordered = stmt.order_by(*ordering)

    def _column(self, name: str, usage: str):
        try:
            return self._columns[name]
        except KeyError as e:
            raise InvalidConfigurationError(
                f"Unknown {usage} field '{name}' for {self.model.__name__}"
            ) from e

    def count(self) -> int:
        stmt = select(func.count()).select_from(self._filtered.subquery())
        return self.db.execute(stmt).scalar_one()

    def fetch(self, offset: int, limit: int) -> List[Record]:
        stmt = self._ordered.offset(offset).limit(limit)
        rows = self.db.execute(stmt).scalars().all()
        return [{key: getattr(row, key) for key in self._columns} for row in rows]


SourceFactory = Callable[[Session, Dict[str, Any], List[str]], ListSource]


class SourceRegistry:
    """Maps source names to factories building a ListSource from a reference."""

    def __init__(self):
        self._factories: Dict[str, SourceFactory] = {}

    def register(self, name: str) -> Callable[[SourceFactory], SourceFactory]:
        """
        Usage:

          @source_registry.register("drivers")
          def drivers_source(db, filters, sort):
              return QueryListSource(db, Driver, filters, sort)
        """

        def decorator(factory: SourceFactory) -> SourceFactory:
            if name in self._factories:
                raise ValueError(f"Duplicate list source for name={name}")
            self._factories[name] = factory
            return factory

        return decorator

    def names(self) -> List[str]:
        return sorted(self._factories)

    def resolve(self, list_ref: ListReference, db: Session) -> ListSource:
        try:
            factory = self._factories[list_ref.source]
        except KeyError as e:
            raise InvalidConfigurationError(
                f"No list source registered for '{list_ref.source}'; "
                f"known sources: {', '.join(self.names()) or 'none'}"
            ) from e
        return factory(db, dict(list_ref.filters), list(list_ref.sort))


source_registry = SourceRegistry()
register_source = source_registry.register


@register_source("export_jobs")
def export_jobs_source(db: Session, filters: Dict[str, Any], sort: List[str]) -> ListSource:
    """The export job table itself, newest first unless sorted otherwise."""
    from exportqueue.exports.models import ExportJob

    return QueryListSource(db, ExportJob, filters, sort or ["-created_at"])
