from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote_plus, unquote_plus, urlparse, urlunparse

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import sessionmaker
import structlog

logger = structlog.get_logger()

DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

_TRUE_VALUES = ("true", "yes", "sspi", "1")


@dataclass(frozen=True)
class Credentials:
    """Resolved target for every store and collector call."""

    server: str
    database: str
    url: str

    def __str__(self) -> str:
        return f"{self.server}/{self.database}"


def get_engine(url: str | None = None):
    """Create a SQLAlchemy engine. Defaults to in-memory SQLite when url is None."""
    url = url or "sqlite:///:memory:"
    url = normalize_db_url(url)
    engine = create_engine(url, echo=False, future=True, pool_pre_ping=True)
    return engine


def normalize_db_url(value: str) -> str:
    """Normalize different DB connection representations into a SQLAlchemy URL.

    - If value already looks like a URL (contains '://'), return it with any
      credentials percent-encoded.
    - If value is a semicolon-separated ADO.NET-style SQL Server string
      (Server=...;Database=...;User Id=...;Password=...), convert it to a
      mssql+pyodbc SQLAlchemy URL.
    - If value looks like a filesystem path, convert to sqlite URL.
    """
    if not value:
        return value

    if "://" in value:
        try:
            parsed = urlparse(value)
        except ValueError:
            return value

        # Unquote first to avoid double-encoding when callers already pass
        # percent-encoded credentials (e.g., SqlP%40ss8).
        if parsed.username or parsed.password:
            username_raw = unquote_plus(parsed.username) if parsed.username else None
            password_raw = unquote_plus(parsed.password) if parsed.password else None
            username = quote_plus(username_raw) if username_raw is not None else None
            password = quote_plus(password_raw) if password_raw is not None else None
            hostport = parsed.hostname or ""
            if parsed.port:
                hostport = f"{hostport}:{parsed.port}"
            userinfo = ""
            if username is not None:
                userinfo = username
                if password is not None:
                    userinfo = f"{userinfo}:{password}"
                userinfo = f"{userinfo}@"
            rebuilt = parsed._replace(netloc=f"{userinfo}{hostport}")
            return urlunparse(rebuilt)

        return value

    if "=" in value and ";" in value:
        kv = parse_connection_string(value)

        host = kv.get("server") or kv.get("data source") or kv.get("host") or kv.get("address")
        user = kv.get("user id") or kv.get("uid") or kv.get("user") or kv.get("username")
        password = kv.get("password") or kv.get("pwd")
        database = kv.get("database") or kv.get("initial catalog")
        trusted = (kv.get("trusted_connection") or kv.get("integrated security") or "").lower()
        driver = kv.get("driver", DEFAULT_ODBC_DRIVER).strip("{}")

        if host and database:
            # SQL Server writes the port after a comma: "host,1433"
            port = None
            if "," in host:
                host, port = (part.strip() for part in host.split(",", 1))
            port_part = f":{port}" if port else ""
            if user and trusted not in _TRUE_VALUES:
                pwd_q = quote_plus(password) if password is not None else ""
                userinfo = f"{quote_plus(user)}:{pwd_q}@"
            else:
                userinfo = ""
            query = [f"driver={quote_plus(driver)}"]
            if not userinfo:
                query.append("trusted_connection=yes")
            encrypt = kv.get("encrypt")
            if encrypt:
                query.append(f"Encrypt={quote_plus(encrypt)}")
            trust_cert = kv.get("trustservercertificate")
            if trust_cert:
                query.append(f"TrustServerCertificate={quote_plus(trust_cert)}")
            return f"mssql+pyodbc://{userinfo}{host}{port_part}/{database}?{'&'.join(query)}"

    v = value.replace("\\", "/")
    if os.path.exists(v) or "/" in v or "\\" in value:
        return f"sqlite:///{v}"

    return value


def parse_connection_string(value: str) -> dict[str, str]:
    """Split a `key=value;key=value` connection string into a lower-cased dict."""
    kv = {}
    for part in value.split(";"):
        part = part.strip()
        if "=" in part:
            k, v = part.split("=", 1)
            kv[k.strip().lower()] = v.strip()
    return kv


def mask_url(url: str) -> str:
    """Return url with the password replaced by `***` for log output."""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return url


def resolve_credentials(connection_string: Optional[str] = None, config_file: Optional[str] = None) -> Credentials:
    """Resolve the target server/database from a connection string or config file.

    A connection string wins over the config file. The config file is the
    JSON config used by the CLI; its `database` key holds the connection
    string.

    Raises:
        ValueError: If neither source yields a connection string
    """
    raw = connection_string
    if not raw and config_file:
        p = Path(config_file)
        if not p.exists():
            raise ValueError(f"Config file not found: {config_file}")
        with p.open("r", encoding="utf-8") as fh:
            raw = (json.load(fh) or {}).get("database")
    if not raw:
        raise ValueError("No connection string given and no 'database' key in config")

    url = normalize_db_url(raw)
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        server = "localhost"
        database = parsed.database or ":memory:"
    else:
        server = parsed.host or "localhost"
        if parsed.port:
            server = f"{server},{parsed.port}"
        database = parsed.database or ""
    return Credentials(server=server, database=database, url=url)


def get_sessionmaker(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def provision_schema(engine) -> None:
    """Create the lock, run-attempt and activity log tables and seed the lock row.

    Safe to call repeatedly.
    """
    # Import models lazily to avoid circular imports at package import time
    from whoisactive.models import Base
    from whoisactive.lib.db_lock import ensure_lock_row

    Base.metadata.create_all(engine)
    Session = get_sessionmaker(engine)
    with Session() as session:
        ensure_lock_row(session)
    logger.info("schema_provisioned", tables=sorted(Base.metadata.tables))


def drop_schema(engine) -> None:
    """Drop the collector tables. Missing tables are ignored."""
    from whoisactive.models import Base

    Base.metadata.drop_all(engine)
    logger.info("schema_dropped", tables=sorted(Base.metadata.tables))


class InMemoryAdapter:
    """Lightweight in-memory DB adapter for tests.

    Usage:
        adapter = InMemoryAdapter()
        session = adapter.session()
    """

    def __init__(self):
        self.engine = get_engine("sqlite:///:memory:")
        self.Session = get_sessionmaker(self.engine)
        provision_schema(self.engine)

    def session(self):
        return self.Session()
