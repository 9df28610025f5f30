"""
PostgreSQL administrative client and connection URL helpers

The client opens one connection per call and closes it afterwards. Call
volume is bounded by the reconcile frequency.
"""

import re
from dataclasses import dataclass
from typing import Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode, quote, unquote

import psycopg2
from psycopg2 import sql, errorcodes
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from settings import Config, logger
from exceptions import ConfigurationError, InvalidPostgresLabel
from keywords import is_reserved


Statement = Union[str, sql.Composable]

# NOTE: stricter than what postgres itself accepts
POSTGRES_LABEL_RE = re.compile(r"^[a-z][a-z0-9_]{2,62}$")

# do not collapse runs, two different names must not sanitize to the same one
INVALID_CHARACTERS_RE = re.compile(r"[^a-z0-9]")


def validate_postgres_label(label: str) -> str:
    """
    Check that a role, database or schema name is a safe SQL identifier

    Args:
        label: Name to check

    Returns:
        The label, unchanged

    Raises:
        InvalidPostgresLabel: if the label is a key word or fails the pattern
    """
    if is_reserved(label):
        raise InvalidPostgresLabel(label, "reserved word")
    if not POSTGRES_LABEL_RE.fullmatch(label):
        raise InvalidPostgresLabel(label, f"must match {POSTGRES_LABEL_RE.pattern}")
    return label


def is_missing_schema(error: Exception) -> bool:
    """True for the 'schema does not exist' error class (SQLSTATE 3F000)"""
    return isinstance(error, psycopg2.Error) and error.pgcode == errorcodes.INVALID_SCHEMA_NAME


# ============================================================================
# CONNECTION URLS
# ============================================================================

@dataclass
class DatabaseURL:
    """A parsed postgres:// connection URL"""
    scheme: str
    username: str
    password: Optional[str]
    host: str
    database: str
    query: str = ""

    @classmethod
    def parse(cls, url: str, require_database: bool = True) -> "DatabaseURL":
        parts = urlsplit(url)
        host = parts.netloc.rpartition("@")[2]
        missing_database = require_database and not parts.path.lstrip("/")
        if not parts.scheme.startswith("postgres") or not host or missing_database:
            raise ConfigurationError(f"malformed database url: {url!r}")
        return cls(
            scheme=parts.scheme,
            username=unquote(parts.username) if parts.username else "",
            password=unquote(parts.password) if parts.password else None,
            host=host,
            database=parts.path.lstrip("/"),
            query=parts.query,
        )

    @property
    def has_password(self) -> bool:
        return bool(self.password)

    def with_credentials(self, username: str, password: Optional[str]) -> "DatabaseURL":
        return DatabaseURL(self.scheme, username, password, self.host, self.database, self.query)

    def with_query_defaults(self, other: "DatabaseURL") -> "DatabaseURL":
        """Copy query parameters from other that this URL does not set"""
        params = dict(parse_qsl(self.query, keep_blank_values=True))
        for key, value in parse_qsl(other.query, keep_blank_values=True):
            if not params.get(key):
                params[key] = value
        return DatabaseURL(
            self.scheme, self.username, self.password, self.host, self.database,
            urlencode(params),
        )

    def _netloc(self, password: Optional[str]) -> str:
        userinfo = quote(self.username, safe="")
        if password:
            userinfo += ":" + quote(password, safe="")
        return f"{userinfo}@{self.host}" if userinfo else self.host

    def render(self) -> str:
        return urlunsplit((self.scheme, self._netloc(self.password), "/" + self.database, self.query, ""))

    def redacted(self) -> str:
        password = "xxxxx" if self.password else None
        return urlunsplit((self.scheme, self._netloc(password), "/" + self.database, self.query, ""))

    def __str__(self) -> str:
        return self.redacted()


def sanitize_name(name: str) -> str:
    return INVALID_CHARACTERS_RE.sub("_", name)


def query_params(schema: str = "", sslmode: str = "") -> str:
    q = ""
    if schema:
        q += f"options=-csearch_path={schema}"
    if sslmode:
        if q:
            q += "&"
        q += f"sslmode={sslmode}"
    return q


def database_url(host: str, name: str, password: str = "", query: str = "") -> DatabaseURL:
    """
    Build the conventional URL for a product database

    The role and database are both named after the sanitized component name;
    the password is left off when empty so it can be resolved later.
    """
    db_name = sanitize_name(name)
    return DatabaseURL(
        scheme="postgres",
        username=db_name,
        password=password or None,
        host=host,
        database=db_name,
        query=query,
    )


# ============================================================================
# DATABASE CLIENT
# ============================================================================

class DatabaseClient:
    """Runs administrative statements against a single connection URL"""

    def __init__(self, url: DatabaseURL, log=None, dry_run: bool = False):
        self.url = url
        self.log = log or logger
        self.dry_run = dry_run

    def _connect(self):
        conn = psycopg2.connect(self.url.render(), connect_timeout=Config.DB_CONNECT_TIMEOUT)
        # CREATE/DROP DATABASE refuse to run inside a transaction block
        conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
        return conn

    def ping(self):
        """Open a connection and run a trivial query; raises on failure"""
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        finally:
            conn.close()

    def execute(self, statement: Statement, *args):
        """
        Execute a statement that returns nothing

        Args:
            statement: SQL string or psycopg2.sql composition
            args: bound parameters (passwords and other values)
        """
        if self.dry_run:
            self.log.info(f"[DRY-RUN] Would execute on {self.url}: {_describe(statement)}")
            return

        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(statement, args or None)
                self.log.debug(f"Executed on {self.url}: {_describe(statement)}")
        finally:
            conn.close()

    def query_row(self, statement: Statement, *args) -> Optional[Tuple]:
        """
        Fetch the first row of a query

        Returns:
            The first row, or None when the query returns no rows
        """
        conn = self._connect()
        try:
            with conn.cursor() as cur:
                cur.execute(statement, args or None)
                return cur.fetchone()
        finally:
            conn.close()


def _describe(statement: Statement) -> str:
    if isinstance(statement, sql.Composable):
        return repr(statement)
    return statement
