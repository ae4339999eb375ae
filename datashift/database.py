from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy emit it instead.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(connection) -> None:
        connection.exec_driver_sql("BEGIN")


def build_session_factory(database_url: str, metadata: MetaData | None = None) -> sessionmaker[Session]:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, future=True, connect_args=connect_args)
    if database_url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)
    if metadata is not None:
        metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@contextmanager
def rollback_only_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Yield a session whose work is always rolled back.

    The session joins an outer transaction on a dedicated connection, so
    ``session.commit()`` only releases a savepoint and nothing survives the
    final rollback.
    """
    engine = session_factory.kw["bind"]
    with engine.connect() as connection:
        outer = connection.begin()
        db = session_factory(bind=connection, join_transaction_mode="create_savepoint")
        try:
            yield db
        finally:
            db.close()
            if outer.is_active:
                outer.rollback()


@contextmanager
def plain_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def database_host(session_factory: sessionmaker[Session]) -> str | None:
    engine = session_factory.kw.get("bind")
    if engine is None:
        return None
    return engine.url.host
