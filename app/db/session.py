from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def create_db_engine(database_url: str, **kwargs) -> Engine:
    if database_url.startswith("sqlite"):
        # Scheduler jobs and request handlers share the engine across threads.
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        engine = create_engine(database_url, connect_args=connect_args, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(database_url, pool_pre_ping=True, pool_recycle=300, **kwargs)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
