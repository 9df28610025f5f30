"""
Pytest fixtures: an in-memory Kubernetes API and PostgreSQL server.
"""

import base64
import copy
import os
import re
import sys

import psycopg2
import psycopg2.errors
import pytest
from psycopg2 import sql
from kubernetes.client.rest import ApiException

# Add this directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from settings import Config, logger
from kube import ObjectKey
from pgclient import DatabaseURL
from provisioner import DatabaseProvisioner
from metrics import Metrics


NAMESPACE = "posit-team"
ADMIN_USER = "admin"
ADMIN_PASSWORD = "adminpw"
DB_HOST = "db-host"
MAIN_URL = f"postgres://{ADMIN_USER}:{ADMIN_PASSWORD}@{DB_HOST}/postgres?sslmode=disable"
WORKLOAD_SECRET = "site-workload"


# ============================================================================
# KUBERNETES
# ============================================================================

class FakeKubernetesClient:
    """Dict-backed stand-in for KubernetesClient with resourceVersion checks"""

    def __init__(self):
        self.objects = {}
        self.writes = []
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def get(self, key: ObjectKey):
        obj = self.objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, api_version, kind, namespace):
        return [
            copy.deepcopy(obj) for key, obj in self.objects.items()
            if key.api_version == api_version and key.kind == kind and key.namespace == namespace
        ]

    def create(self, manifest):
        key = ObjectKey.of(manifest)
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        obj = copy.deepcopy(manifest)
        meta = obj.setdefault("metadata", {})
        meta["resourceVersion"] = self._next_version()
        meta.setdefault("uid", f"uid-{key.name}")
        self.objects[key] = obj
        self.writes.append(("create", key))
        return copy.deepcopy(obj)

    def update(self, manifest):
        key = ObjectKey.of(manifest)
        live = self.objects.get(key)
        if live is None:
            raise ApiException(status=404, reason="NotFound")
        if manifest["metadata"].get("resourceVersion") != live["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        obj = copy.deepcopy(manifest)
        obj["metadata"]["resourceVersion"] = self._next_version()
        self.objects[key] = obj
        self.writes.append(("update", key))
        return copy.deepcopy(obj)

    def patch(self, key, body):
        live = self.objects.get(key)
        if live is None:
            raise ApiException(status=404, reason="NotFound")
        meta_patch = dict(body.get("metadata", {}))
        expected = meta_patch.pop("resourceVersion", None)
        if expected is not None and expected != live["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        for field, value in meta_patch.items():
            if value is None:
                live["metadata"].pop(field, None)
            else:
                live["metadata"][field] = copy.deepcopy(value)
        live["metadata"]["resourceVersion"] = self._next_version()
        self.writes.append(("patch", key))
        self._collect(key)
        return copy.deepcopy(live)

    def delete(self, key):
        live = self.objects.get(key)
        if live is None:
            raise ApiException(status=404, reason="NotFound")
        self.writes.append(("delete", key))
        if live["metadata"].get("finalizers"):
            live["metadata"].setdefault("deletionTimestamp", "2026-10-18T00:00:00Z")
            live["metadata"]["resourceVersion"] = self._next_version()
            return
        del self.objects[key]

    def _collect(self, key):
        live = self.objects[key]
        if live["metadata"].get("deletionTimestamp") and not live["metadata"].get("finalizers"):
            del self.objects[key]

    def read_secret_value(self, namespace, name, key):
        secret = self.objects.get(ObjectKey("v1", "Secret", namespace, name))
        if secret is None:
            raise ApiException(status=404, reason="NotFound")
        if key in (secret.get("data") or {}):
            return base64.b64decode(secret["data"][key]).decode()
        return (secret.get("stringData") or {}).get(key)

    def add_secret(self, namespace, name, data):
        self.objects[ObjectKey("v1", "Secret", namespace, name)] = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name, "namespace": namespace, "resourceVersion": self._next_version()},
            "data": {k: base64.b64encode(v.encode()).decode() for k, v in data.items()},
        }


# ============================================================================
# POSTGRES
# ============================================================================

class FakeInvalidSchemaName(psycopg2.errors.InvalidSchemaName):
    pgcode = property(lambda self: "3F000")


def render(statement) -> str:
    """Render a psycopg2.sql composition without a connection"""
    if isinstance(statement, str):
        return statement
    if isinstance(statement, sql.Composed):
        return "".join(render(part) for part in statement.seq)
    if isinstance(statement, sql.Identifier):
        return ".".join(f'"{s}"' for s in statement.strings)
    if isinstance(statement, sql.SQL):
        return statement.string
    raise TypeError(f"cannot render {statement!r}")


IDENT = r'"([^"]+)"'


class FakePostgresServer:
    """
    Models roles, databases, schemas and extensions on one server and
    interprets exactly the statements the provisioner issues.
    """

    def __init__(self, admin_user=ADMIN_USER, admin_password=ADMIN_PASSWORD):
        self.admin_user = admin_user
        self.admin_password = admin_password
        self.roles = {}
        self.memberships = set()
        self.databases = {}
        self.statements = []
        self.fail_on = {}
        self.down = False

    # state helpers for tests
    def add_role(self, name, password):
        self.roles[name] = {"password": password, "login": True}

    def add_database(self, name, owner=None):
        self.databases[name] = {"owner": owner or self.admin_user, "schemas": {"public": self.admin_user}, "extensions": set()}

    def authenticate(self, url: DatabaseURL):
        if self.down:
            raise psycopg2.OperationalError("connection refused")
        if url.username == self.admin_user:
            ok = url.password == self.admin_password
        else:
            role = self.roles.get(url.username)
            ok = role is not None and role["login"] and role["password"] == url.password
        if not ok:
            raise psycopg2.OperationalError(f'password authentication failed for user "{url.username}"')
        if url.database != "postgres" and url.database not in self.databases:
            raise psycopg2.OperationalError(f'database "{url.database}" does not exist')

    def mutating(self):
        return [s for _, _, s in self.statements if not s.startswith("SELECT")]

    def run(self, url: DatabaseURL, statement: str, args):
        self.authenticate(url)
        for prefix, error in self.fail_on.items():
            if statement.startswith(prefix):
                raise error
        self.statements.append((url.username, url.database, statement))
        db = self.databases.get(url.database)

        m = re.fullmatch(r"SELECT (rolname|datname|extname) FROM (pg_roles|pg_database|pg_extension) WHERE \1 = %s", statement)
        if m:
            name = args[0]
            if m.group(2) == "pg_roles":
                return (name,) if name in self.roles else None
            if m.group(2) == "pg_database":
                return (name,) if name in self.databases else None
            return (name,) if db is not None and name in db["extensions"] else None
        if statement == "SELECT 1":
            return (1,)

        m = re.fullmatch(rf"(CREATE|ALTER) ROLE {IDENT} LOGIN PASSWORD %s", statement)
        if m:
            if m.group(1) == "CREATE" and m.group(2) in self.roles:
                raise psycopg2.errors.DuplicateObject(f'role "{m.group(2)}" already exists')
            self.roles[m.group(2)] = {"password": args[0], "login": True}
            return None
        m = re.fullmatch(rf"CREATE DATABASE {IDENT}", statement)
        if m:
            if m.group(1) in self.databases:
                raise psycopg2.errors.DuplicateDatabase(f'database "{m.group(1)}" already exists')
            self.add_database(m.group(1))
            return None
        m = re.fullmatch(rf"GRANT ALL PRIVILEGES ON DATABASE {IDENT} TO {IDENT}", statement)
        if m:
            return None
        m = re.fullmatch(rf"GRANT {IDENT} TO {IDENT}", statement)
        if m:
            self.memberships.add((m.group(1), m.group(2)))
            return None
        m = re.fullmatch(rf"ALTER SCHEMA (public|{IDENT}) OWNER TO {IDENT}", statement)
        if m:
            schema = m.group(2) or "public"
            if schema not in db["schemas"]:
                raise FakeInvalidSchemaName(f'schema "{schema}" does not exist')
            db["schemas"][schema] = m.group(3)
            return None
        m = re.fullmatch(rf"CREATE SCHEMA {IDENT} AUTHORIZATION {IDENT}", statement)
        if m:
            if m.group(1) in db["schemas"]:
                raise psycopg2.errors.DuplicateSchema(f'schema "{m.group(1)}" already exists')
            db["schemas"][m.group(1)] = m.group(2)
            return None
        m = re.fullmatch(rf"CREATE EXTENSION IF NOT EXISTS {IDENT}", statement)
        if m:
            db["extensions"].add(m.group(1))
            return None
        m = re.fullmatch(rf"DROP (DATABASE|ROLE) {IDENT}", statement)
        if m:
            if m.group(1) == "DATABASE":
                del self.databases[m.group(2)]
            else:
                del self.roles[m.group(2)]
            return None
        raise AssertionError(f"unexpected statement: {statement}")


class FakeDatabaseClient:
    def __init__(self, server: FakePostgresServer, url: DatabaseURL, log=None):
        self.server = server
        self.url = url

    def ping(self):
        self.server.authenticate(self.url)

    def execute(self, statement, *args):
        self.server.run(self.url, render(statement), args)

    def query_row(self, statement, *args):
        return self.server.run(self.url, render(statement), args)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def kube():
    client = FakeKubernetesClient()
    client.add_secret(NAMESPACE, WORKLOAD_SECRET, {"main-database-url": MAIN_URL})
    return client


@pytest.fixture
def pg_server():
    return FakePostgresServer()


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def provisioner(kube, pg_server, metrics):
    return DatabaseProvisioner(
        kube,
        client_factory=lambda url, log: FakeDatabaseClient(pg_server, url, log),
        log=logger,
        metrics=metrics,
    )


@pytest.fixture
def make_pgd(kube):
    """Store a PostgresDatabase manifest and return its key"""

    def _make(name="svc", url=f"postgres://svc:svcpw@{DB_HOST}/svc", schemas=None, extensions=None, drop=True, **spec):
        manifest = {
            "apiVersion": Config.api_version(),
            "kind": "PostgresDatabase",
            "metadata": {"name": name, "namespace": NAMESPACE},
            "spec": {
                "url": url,
                "schemas": schemas or [],
                "extensions": extensions or [],
                "teardown": {"drop": drop},
                "workloadSecret": {"type": "kubernetes", "vaultName": WORKLOAD_SECRET},
                **spec,
            },
        }
        created = kube.create(manifest)
        return ObjectKey.of(created)

    return _make
