from collections.abc import Iterable, Iterator
from dataclasses import dataclass
import logging
import reprlib

from sqlalchemy import func, inspect, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from datashift.errors import RecordsNotFoundError, ShiftConfigurationError


logger = logging.getLogger(__name__)

_identifier_repr = reprlib.Repr()
_identifier_repr.maxstring = 80
_identifier_repr.maxother = 80


def _mapped_state(record: object):
    return inspect(record, raiseerr=False)


def identifier(record: object) -> str:
    state = _mapped_state(record)
    if state is not None and getattr(state, "identity", None):
        key = ",".join(str(part) for part in state.identity)
        return f"{type(record).__name__}#{key}"
    if hasattr(record, "id"):
        return f"{type(record).__name__}#{record.id}"
    text = _identifier_repr.repr(record)
    return text if len(text) <= 80 else f"{text[:77]}..."


def checkpoint_key(record: object) -> object | None:
    state = _mapped_state(record)
    if state is not None and getattr(state, "identity", None):
        return state.identity[0]
    return getattr(record, "id", None)


def default_label(items: list[object]) -> str:
    if not items:
        return "records"
    state = _mapped_state(items[0])
    if state is not None and getattr(state, "mapper", None) is not None:
        return state.mapper.local_table.name
    return "records"


@dataclass(frozen=True, eq=False)
class StreamingCollection:
    """A ``select()`` of one mapped entity, read lazily in primary-key windows."""

    statement: Select
    entity: type
    batch_size: int

    @classmethod
    def from_statement(cls, statement: Select, batch_size: int) -> "StreamingCollection":
        descriptions = statement.column_descriptions
        entity = None
        if len(descriptions) == 1 and descriptions[0].get("expr") is descriptions[0].get("entity"):
            entity = descriptions[0].get("entity")
        if entity is None:
            raise ShiftConfigurationError("Streaming collections must select exactly one mapped entity.")
        if len(inspect(entity).primary_key) != 1:
            raise ShiftConfigurationError(
                f"Streaming collections need a single-column primary key; {entity.__name__} has a composite key."
            )
        return cls(statement=statement, entity=entity, batch_size=batch_size)

    @property
    def key_attribute(self):
        mapper = inspect(self.entity)
        return mapper.get_property_by_column(mapper.primary_key[0]).class_attribute

    @property
    def label(self) -> str:
        return inspect(self.entity).local_table.name

    def after(self, value: object) -> "StreamingCollection":
        key = self.key_attribute
        try:
            value = key.type.python_type(value)
        except (NotImplementedError, TypeError, ValueError):
            pass
        logger.info("resuming streaming collection", extra={"key": key.key, "after": value})
        return StreamingCollection(statement=self.statement.where(key > value), entity=self.entity, batch_size=self.batch_size)

    def count(self, db: Session) -> int:
        subquery = self.statement.order_by(None).subquery()
        return db.execute(select(func.count()).select_from(subquery)).scalar_one()

    def iterate(self, db: Session) -> Iterator[object]:
        key = self.key_attribute
        ordered = self.statement.order_by(None).order_by(key)
        last_key = None
        while True:
            window = ordered if last_key is None else ordered.where(key > last_key)
            rows = db.execute(window.limit(self.batch_size)).scalars().all()
            if not rows:
                return
            # Capture the boundary before processing; commits expire and handlers may delete rows.
            last_key = inspect(rows[-1]).identity[0]
            yield from rows
            if len(rows) < self.batch_size:
                return


def resolve_collection(records: object, *, batch_size: int) -> StreamingCollection | list[object]:
    if isinstance(records, StreamingCollection):
        return records
    if isinstance(records, Select):
        return StreamingCollection.from_statement(records, batch_size)
    if records is None:
        return []
    if isinstance(records, Iterable) and not isinstance(records, (str, bytes)):
        return list(records)
    return [records]


def find_exactly(db: Session, model: type, ids: Iterable[object]) -> list[object]:
    wanted: list[object] = []
    for value in ids:
        if value is not None and value not in wanted:
            wanted.append(value)
    if not wanted:
        return []

    mapper = inspect(model)
    key = mapper.get_property_by_column(mapper.primary_key[0]).class_attribute
    found = {inspect(row).identity[0]: row for row in db.execute(select(model).where(key.in_(wanted))).scalars()}
    missing = [value for value in wanted if value not in found]
    if missing:
        raise RecordsNotFoundError(model, wanted, missing)
    return [found[value] for value in wanted]
