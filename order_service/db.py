from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from common.settings import settings

def build_engine(url: str = None, **kwargs):
    url = url or settings.sqlalchemy_url
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": settings.db_pool_timeout}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)
    elif url.startswith("mysql"):
        connect_args = {"connection_timeout": settings.db_connect_timeout}
        kwargs.setdefault("isolation_level", "READ COMMITTED")
        kwargs.setdefault("pool_timeout", settings.db_pool_timeout)

    engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args, **kwargs)

    if engine.dialect.name == "mysql":
        @event.listens_for(engine, "connect")
        def _bound_lock_waits(dbapi_connection, connection_record):
            # a stuck row lock must fail the job (and retry) rather than hang the worker
            cursor = dbapi_connection.cursor()
            cursor.execute(f"SET SESSION innodb_lock_wait_timeout = {int(settings.db_pool_timeout)}")
            cursor.close()

    return engine

engine = build_engine()
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

def init_db(bind=None):
    from order_service.models import Base
    Base.metadata.create_all(bind=bind or engine)
