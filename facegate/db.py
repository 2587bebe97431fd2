from __future__ import annotations
import os
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

def make_engine(db_url: str) -> Engine:
    url = make_url(db_url)
    connect_args = {}
    if url.get_backend_name() == "sqlite":
        # sqlite: ensure directory exists
        if url.database and url.database != ":memory:":
            parent = os.path.dirname(os.path.abspath(url.database))
            os.makedirs(parent, exist_ok=True)
        # routes run in the threadpool
        connect_args["check_same_thread"] = False
    return create_engine(db_url, future=True, echo=False, connect_args=connect_args)

def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
