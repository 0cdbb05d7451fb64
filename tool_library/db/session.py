import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


TOOL_LIBRARY_DB_URL = _require_env("TOOL_LIBRARY_DB_URL")
DB_TIMEOUT_SECONDS = int(os.environ.get("TOOL_LIBRARY_DB_TIMEOUT_SECONDS") or "10")


def build_connect_args(url: str, timeout_seconds: int) -> dict:
    if url.startswith("postgresql"):
        return {
            "connect_timeout": timeout_seconds,
            "options": f"-c statement_timeout={timeout_seconds * 1000}",
        }
    if url.startswith("sqlite"):
        return {"timeout": timeout_seconds, "check_same_thread": False}
    return {}


def build_engine_options(url: str, timeout_seconds: int) -> dict:
    options = {
        "pool_pre_ping": True,
        "connect_args": build_connect_args(url, timeout_seconds),
        "future": True,
    }
    if url.startswith("sqlite") and ":memory:" in url:
        # One shared connection, otherwise every checkout sees an empty database.
        options["poolclass"] = StaticPool
    else:
        options["pool_timeout"] = timeout_seconds
    return options


engine = create_engine(TOOL_LIBRARY_DB_URL, **build_engine_options(TOOL_LIBRARY_DB_URL, DB_TIMEOUT_SECONDS))

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
