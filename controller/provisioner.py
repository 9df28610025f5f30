"""
PostgreSQL database provisioning for PostgresDatabase resources

Every external mutation is existence-checked or naturally idempotent, so the
converge and teardown paths can be re-run from the top after a crash or a
failed step. Progress is never stored.

Two credential tiers are used:
- main: the administrative URL for the site, allowed to create roles/databases
- subject: the role/database declared on the resource
"""

import enum
from typing import Callable, List, Optional, Tuple

import psycopg2
from psycopg2 import sql

from settings import Config, WHITE, YELLOW, RESET, logger, with_values
from exceptions import (
    ConfigurationError,
    InvalidPostgresLabel,
    InvalidSecretType,
    MissingCredentials,
    MismatchedDatabaseHost,
    MissingMainDatabaseURL,
    SecretNotFoundError,
)
from models import PostgresDatabase
from pgclient import DatabaseClient, DatabaseURL, is_missing_schema, validate_postgres_label
from credentials import determine_main_database_url, fetch_secret


class ProvisionState(enum.Enum):
    """Observed state of the subject database, recomputed every reconcile"""
    READY = "ready"
    CREDENTIAL_DRIFT = "credential-drift"
    ABSENT = "absent"


ClientFactory = Callable[[DatabaseURL, object], DatabaseClient]


class DatabaseProvisioner:
    """
    Converges one PostgresDatabase against the live server
    """

    def __init__(self, kube, client_factory: ClientFactory = None, log=None, metrics=None, dry_run: bool = False):
        self.kube = kube
        self.dry_run = dry_run
        self.client_factory = client_factory or (
            lambda url, log: DatabaseClient(url, log, dry_run=self.dry_run)
        )
        self.log = log or logger
        self.metrics = metrics

    def _count(self, name: str):
        if self.metrics is not None and not self.dry_run:
            self.metrics.increment(name)

    # ------------------------------------------------------------------
    # finalizer
    # ------------------------------------------------------------------

    def _patch_finalizers(self, pgd: PostgresDatabase, finalizers: Optional[List[str]]):
        """
        Merge-patch the finalizer list

        The list is replaced wholesale, so the patch carries the resourceVersion
        it was computed from and a concurrent change comes back as a 409.
        """
        metadata = {"finalizers": finalizers}
        if pgd.metadata.get("resourceVersion"):
            metadata["resourceVersion"] = pgd.metadata["resourceVersion"]
        updated = self.kube.patch(pgd.key, {"metadata": metadata})
        pgd.metadata["finalizers"] = list(finalizers or [])
        if updated and updated.get("metadata", {}).get("resourceVersion"):
            pgd.metadata["resourceVersion"] = updated["metadata"]["resourceVersion"]

    def ensure_finalizer(self, pgd: PostgresDatabase, log) -> bool:
        finalizers = pgd.finalizers
        if Config.FINALIZER in finalizers:
            return False
        if self.dry_run:
            log.info(f"[DRY-RUN] Would add finalizer {Config.FINALIZER}")
            return False
        finalizers.append(Config.FINALIZER)
        self._patch_finalizers(pgd, finalizers)
        log.info("Added finalizer")
        return True

    def remove_finalizer(self, pgd: PostgresDatabase, log) -> bool:
        finalizers = pgd.finalizers
        if Config.FINALIZER not in finalizers:
            return False
        if self.dry_run:
            log.info(f"[DRY-RUN] Would remove finalizer {Config.FINALIZER}")
            return False
        remaining = [f for f in finalizers if f != Config.FINALIZER]
        self._patch_finalizers(pgd, remaining or None)
        self._count("finalizers_removed")
        log.info("Removed finalizer")
        return True

    # ------------------------------------------------------------------
    # urls
    # ------------------------------------------------------------------

    def main_database_url(self, pgd: PostgresDatabase, log) -> DatabaseURL:
        try:
            return determine_main_database_url(
                self.kube,
                pgd.key.namespace,
                pgd.spec.workload_secret,
                pgd.spec.main_database_credential_secret,
                log,
            )
        except (SecretNotFoundError, InvalidSecretType) as e:
            log.error(f"Error determining main database url: {e}")
            raise MissingMainDatabaseURL(f"no main database url found: {e}") from e

    def load_validated_database_urls(self, pgd: PostgresDatabase, log) -> Tuple[DatabaseURL, DatabaseURL]:
        """
        Resolve the main and subject URLs for a resource

        Query parameters set on the main URL (sslmode and friends) are copied
        onto the subject URL unless it sets them itself. When a secret and a
        password key are configured, the password always comes from there.

        Returns:
            (main_url, subject_url)
        """
        spec_url = DatabaseURL.parse(pgd.spec.url)
        main_url = self.main_database_url(pgd, log)

        spec_url = spec_url.with_query_defaults(main_url)

        if spec_url.host != main_url.host:
            log.info(f"Mismatched db host: main-db={main_url.host} spec-db={spec_url.host}")
            raise MismatchedDatabaseHost(f"database host {spec_url.host} does not match main host {main_url.host}")
        if not spec_url.username:
            raise MissingCredentials("no username in database url")

        secret = pgd.spec.secret
        vault_name = secret.vault_name or pgd.spec.secret_vault
        if vault_name and pgd.spec.secret_password_key:
            # configured, so it must be used; no falling back to the url password
            password = fetch_secret(self.kube, pgd.key.namespace, secret.type, vault_name, pgd.spec.secret_password_key)
            spec_url = spec_url.with_credentials(spec_url.username, password)

        if not spec_url.has_password:
            raise MissingCredentials(f"no password for role {spec_url.username}")

        return main_url, spec_url

    # ------------------------------------------------------------------
    # converge
    # ------------------------------------------------------------------

    def create_database(self, pgd: PostgresDatabase) -> ProvisionState:
        """
        Converge the declared database

        The finalizer goes on before anything touches the server so a crash
        cannot lose the obligation to clean up.

        Returns:
            The state observed before any changes were made
        """
        log = with_values(self.log, postgresdatabase=f"{pgd.key.namespace}/{pgd.key.name}", event="create/update")

        self.ensure_finalizer(pgd, log)

        log.info("Loading validated database urls")
        main_url, spec_url = self.load_validated_database_urls(pgd, log)

        if not main_url.has_password:
            raise MissingCredentials("main database url has no password")

        # reject unsafe names before any SQL goes out
        validate_postgres_label(spec_url.username)
        validate_postgres_label(spec_url.database)
        for schema in pgd.spec.schemas:
            validate_postgres_label(schema)

        # admin credentials, pointed at the subject database
        superuser_url = spec_url.with_credentials(main_url.username, main_url.password)

        main_db = self.client_factory(main_url, log)
        spec_db = self.client_factory(spec_url, log)
        superuser_db = self.client_factory(superuser_url, log)

        state = self.probe(spec_db, superuser_db, log)

        if state in (ProvisionState.CREDENTIAL_DRIFT, ProvisionState.ABSENT):
            self.ensure_credentials_match(main_db, spec_url, log)

        if state == ProvisionState.ABSENT:
            self.ensure_database_exists_with_access(main_db, spec_url, log)

        role = sql.Identifier(spec_url.username)

        if Config.GRANT_ROLE_TO_ADMIN:
            # lets the admin alter objects owned by the role (needed on Azure)
            superuser_db.execute(sql.SQL("GRANT {} TO {}").format(role, sql.Identifier(main_url.username)))

        superuser_db.execute(sql.SQL("ALTER SCHEMA public OWNER TO {}").format(role))

        for schema in pgd.spec.schemas:
            self.ensure_schema(superuser_db, spec_db, schema, spec_url.username, log)

        for extension in pgd.spec.extensions:
            self.ensure_extension(superuser_db, extension, log)

        if not self.dry_run:
            try:
                spec_db.ping()
            except psycopg2.Error as e:
                log.error(f"Database still unreachable with declared credentials despite everything we have tried: {e}")
                raise

        log.info(f"{WHITE}Database {spec_url.database} is ready{RESET}")
        return state

    def probe(self, spec_db: DatabaseClient, superuser_db: DatabaseClient, log) -> ProvisionState:
        log.info("Determining database and role creation needs")
        try:
            spec_db.ping()
            log.info("Database exists with specified credentials")
            return ProvisionState.READY
        except psycopg2.Error:
            pass
        try:
            superuser_db.ping()
            log.info(f"{YELLOW}Database exists with outdated credentials{RESET}")
            return ProvisionState.CREDENTIAL_DRIFT
        except psycopg2.Error:
            pass
        log.info("Database not reachable with any credentials")
        return ProvisionState.ABSENT

    def ensure_credentials_match(self, main_db: DatabaseClient, spec_url: DatabaseURL, log):
        """Create the role, or reset its password when it already exists"""
        role_name = validate_postgres_label(spec_url.username)
        if not spec_url.has_password:
            raise MissingCredentials(f"no password for role {role_name}")

        role = sql.Identifier(role_name)
        existing = main_db.query_row("SELECT rolname FROM pg_roles WHERE rolname = %s", role_name)
        if existing is None:
            log.info(f"Role {role_name} not found; creating")
            main_db.execute(sql.SQL("CREATE ROLE {} LOGIN PASSWORD %s").format(role), spec_url.password)
            self._count("roles_created")
        else:
            log.info(f"Role {role_name} found; updating password")
            main_db.execute(sql.SQL("ALTER ROLE {} LOGIN PASSWORD %s").format(role), spec_url.password)
            self._count("roles_altered")

    def ensure_database_exists_with_access(self, main_db: DatabaseClient, spec_url: DatabaseURL, log):
        role_name = validate_postgres_label(spec_url.username)
        db_name = validate_postgres_label(spec_url.database)

        existing = main_db.query_row("SELECT datname FROM pg_database WHERE datname = %s", db_name)
        if existing is None:
            log.info(f"Database {db_name} not found; creating")
            main_db.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(db_name)))
            self._count("databases_created")

        log.info("Granting database privileges")
        main_db.execute(
            sql.SQL("GRANT ALL PRIVILEGES ON DATABASE {} TO {}").format(
                sql.Identifier(db_name), sql.Identifier(role_name)
            )
        )

    def ensure_schema(self, superuser_db: DatabaseClient, spec_db: DatabaseClient, schema: str, role_name: str, log):
        """
        Hand an existing schema to the role, or create it owned by the role
        """
        validate_postgres_label(schema)
        log.info(f"Ensuring schema access for {schema}")
        try:
            superuser_db.execute(
                sql.SQL("ALTER SCHEMA {} OWNER TO {}").format(sql.Identifier(schema), sql.Identifier(role_name))
            )
        except psycopg2.Error as e:
            if not is_missing_schema(e):
                log.error(f"Unknown error altering schema {schema} (code {e.pgcode}): {e}")
                raise
            log.info(f"Schema {schema} does not exist; creating")
            spec_db.execute(
                sql.SQL("CREATE SCHEMA {} AUTHORIZATION {}").format(sql.Identifier(schema), sql.Identifier(role_name))
            )

    def ensure_extension(self, superuser_db: DatabaseClient, extension: str, log):
        # a dry run never created the subject database, so there is nothing to read
        installed = not self.dry_run and superuser_db.query_row(
            "SELECT extname FROM pg_extension WHERE extname = %s", extension
        )
        if installed:
            log.debug(f"Extension {extension} already installed")
            return
        log.info(f"Ensuring extension {extension} exists")
        superuser_db.execute(sql.SQL("CREATE EXTENSION IF NOT EXISTS {}").format(sql.Identifier(extension)))

    # ------------------------------------------------------------------
    # teardown
    # ------------------------------------------------------------------

    def cleanup_database(self, pgd: PostgresDatabase) -> bool:
        """
        Tear down the external database according to the teardown policy

        The finalizer is removed only once every drop has succeeded; any
        error propagates with the finalizer still in place.

        Returns:
            True if the finalizer was removed by this call
        """
        log = with_values(self.log, postgresdatabase=f"{pgd.key.namespace}/{pgd.key.name}", event="cleanup")

        if not pgd.spec.teardown.drop:
            log.info("Teardown policy keeps the database; skipping drop")
        else:
            try:
                spec_url = DatabaseURL.parse(pgd.spec.url)
            except ConfigurationError as e:
                spec_url = None
                log.warning(f"Database url never parsed, nothing was provisioned; skipping drop: {e}")

            if spec_url is not None:
                main_url = self.main_database_url(pgd, log)
                main_db = self.client_factory(main_url, log)
                self.drop_database(main_db, spec_url.database, log)
                self.drop_role(main_db, spec_url.username, log)

        log.info("Successfully cleaned up database")
        return self.remove_finalizer(pgd, log)

    def _droppable(self, name: str, what: str, log) -> bool:
        """Invalid names are rejected before any SQL, so nothing by that name was created"""
        try:
            validate_postgres_label(name)
        except InvalidPostgresLabel as e:
            log.warning(f"Skipping drop of {what} {name!r}, it could never have been created: {e.reason}")
            return False
        return True

    def drop_database(self, main_db: DatabaseClient, db_name: str, log):
        if not self._droppable(db_name, "database", log):
            return
        if main_db.query_row("SELECT datname FROM pg_database WHERE datname = %s", db_name) is None:
            log.info(f"Database {db_name} already gone")
            return
        log.info(f"{WHITE}Dropping database {db_name}{RESET}")
        main_db.execute(sql.SQL("DROP DATABASE {}").format(sql.Identifier(db_name)))
        self._count("databases_dropped")

    def drop_role(self, main_db: DatabaseClient, role_name: str, log):
        if not self._droppable(role_name, "role", log):
            return
        if main_db.query_row("SELECT rolname FROM pg_roles WHERE rolname = %s", role_name) is None:
            log.info(f"Role {role_name} already gone")
            return
        log.info(f"{WHITE}Dropping role {role_name}{RESET}")
        main_db.execute(sql.SQL("DROP ROLE {}").format(sql.Identifier(role_name)))
        self._count("roles_dropped")
