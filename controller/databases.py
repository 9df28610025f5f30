"""
Helpers product reconcilers use to request and release databases

A product asks for a database by converging a PostgresDatabase object it
owns; the PostgresDatabase reconciler does the actual provisioning.
"""

import secrets
import string
from typing import Dict, List

from settings import with_values
from exceptions import ConfigurationError, InvalidSecretType
from kube import ObjectKey
from models import PostgresDatabaseConfig, PostgresDatabaseSpec, SecretConfig, SecretType, Teardown, postgres_database_key
from pgclient import database_url
from converge import basic_delete, converge_object, create_no_update, managed_labels, owner_references_for


PASSWORD_LENGTH = 25
PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def ensure_database_exists(
    kube,
    namespace: str,
    owner: Dict,
    db_config: PostgresDatabaseConfig,
    name: str,
    password: str,
    schemas: List[str],
    secret: SecretConfig,
    workload_secret: SecretConfig,
    main_db_credential_secret: SecretConfig,
    secret_key: str,
    log,
) -> bool:
    """
    Converge the PostgresDatabase object for a product

    Extensions are not managed here; whatever is already set on the live
    object is kept.

    Returns:
        True if the object was created or changed
    """
    log = with_values(log, event="create-database", database=name)

    url = database_url(db_config.host, name, password, "")
    if not url.host:
        log.error("Error creating database connection URL: no hostname")
        raise ConfigurationError("database connection hostname not provided")

    desired = PostgresDatabaseSpec(
        url=url.render(),
        schemas=list(schemas),
        teardown=Teardown(drop=db_config.drop_on_teardown),
        secret=secret,
        workload_secret=workload_secret,
        main_database_credential_secret=main_db_credential_secret,
        secret_password_key=secret_key,
        secret_vault=secret.vault_name,
    )

    def mutate(obj: Dict):
        existing = obj.get("spec") or {}
        spec = desired.to_dict()
        spec["extensions"] = list(existing.get("extensions") or [])
        obj["spec"] = spec

    return converge_object(
        kube,
        postgres_database_key(namespace, name),
        owner_references_for(owner),
        mutate,
        log,
    )


def ensure_database_password_secret(kube, namespace: str, owner: Dict, name: str, secret_type: str, log) -> str:
    """
    Generate a database password on first run and return the stored one after

    There is no rotation: an existing Secret is never overwritten.
    """
    log = with_values(log, event="store-database-password-secret", database=name)

    if secret_type == SecretType.KUBERNETES:
        key = ObjectKey("v1", "Secret", namespace, name)
        target = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": managed_labels(),
                "ownerReferences": owner_references_for(owner),
            },
            "type": "Opaque",
            "stringData": {"password": generate_password()},
        }
        create_no_update(kube, target, log)
        value = kube.read_secret_value(namespace, name, "password")
        if value is None:
            raise ConfigurationError(f"secret {namespace}/{name} has no password key")
        return value

    if secret_type in (SecretType.AWS, SecretType.TEST):
        # read directly from the vault at provisioning time
        return ""

    log.error(f"Invalid secret type {secret_type!r}")
    raise InvalidSecretType(f"invalid site definition for secret type {secret_type!r}")


def cleanup_database(kube, namespace: str, name: str, log) -> bool:
    """
    Delete a product's PostgresDatabase object

    Whether the external database is dropped is up to its teardown policy.
    """
    log = with_values(log, event="cleanup-database", database=name)
    key = postgres_database_key(namespace, name)
    if kube.get(key) is None:
        log.info("Database already cleaned up")
        return False
    log.info("Deleting database")
    kube.delete(key)
    return True


def cleanup_database_password_secret(kube, namespace: str, name: str, log) -> bool:
    log = with_values(log, event="cleanup-database-password-secret", database=name)
    return basic_delete(kube, ObjectKey("v1", "Secret", namespace, name), log)
