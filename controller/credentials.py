"""
Credential lookup for database URLs

Only Kubernetes Secrets (and an in-memory provider for tests) are read here;
other vault types are resolved outside the operator.
"""

from typing import Dict

from kubernetes.client.rest import ApiException

from exceptions import (
    InvalidSecretType,
    MissingMainDatabaseURL,
    SecretAccessError,
    SecretNotFoundError,
)
from models import SecretConfig, SecretType
from pgclient import DatabaseURL


# key within the workload secret holding the main database url
MAIN_DATABASE_URL_KEY = "main-database-url"


class InMemorySecretProvider:
    """In-memory vault used by the `test` secret type"""

    def __init__(self):
        self.secrets: Dict[str, str] = {}
        self.strict_mode = False

    def set_secret(self, key: str, value: str):
        self.secrets[key] = value

    def get_secret(self, key: str) -> str:
        return self.secrets[key]

    def get_secret_with_fallback(self, key: str) -> str:
        return self.secrets.get(key, key)

    def reset(self):
        self.secrets = {}
        self.strict_mode = False


TEST_SECRET_PROVIDER = InMemorySecretProvider()


def fetch_secret(kube, namespace: str, secret_type: str, vault_name: str, key: str) -> str:
    """
    Read one key out of a secret vault

    Args:
        kube: KubernetesClient
        namespace: Namespace of the requesting object (Kubernetes vaults)
        secret_type: One of SecretType
        vault_name: Secret name (Kubernetes) or vault id
        key: Key inside the vault

    Raises:
        SecretNotFoundError: the vault or key does not exist
        SecretAccessError: the vault could not be read
        InvalidSecretType: the vault type is not readable here
    """
    if secret_type == SecretType.KUBERNETES:
        try:
            value = kube.read_secret_value(namespace, vault_name, key)
        except ApiException as e:
            if e.status == 404:
                raise SecretNotFoundError(secret_type, vault_name, key, e) from e
            raise SecretAccessError(secret_type, vault_name, key, e) from e
        if value is None:
            raise SecretNotFoundError(secret_type, vault_name, key, f"key {key!r} not found in kubernetes secret")
        return value

    if secret_type == SecretType.TEST:
        if TEST_SECRET_PROVIDER.strict_mode:
            try:
                return TEST_SECRET_PROVIDER.get_secret(key)
            except KeyError as e:
                raise SecretNotFoundError(secret_type, vault_name, key, "key not found") from e
        return TEST_SECRET_PROVIDER.get_secret_with_fallback(key)

    raise InvalidSecretType(f"unknown secret type {secret_type!r}")


def determine_main_database_url(
    kube,
    namespace: str,
    workload_secret: SecretConfig,
    credential_secret: SecretConfig,
    log,
) -> DatabaseURL:
    """
    Work out the administrative database URL for a site

    The URL comes from the workload secret. When a credential secret is
    configured its `username`/`password` keys override whatever credentials
    the URL carries.
    """
    if workload_secret.type not in (SecretType.KUBERNETES, SecretType.TEST):
        log.error(f"Missing database connection definition (workload secret type {workload_secret.type!r})")
        raise MissingMainDatabaseURL("missing database connection definition")

    raw_url = fetch_secret(kube, namespace, workload_secret.type, workload_secret.vault_name, MAIN_DATABASE_URL_KEY)
    db_url = DatabaseURL.parse(raw_url.strip(), require_database=False)

    if credential_secret.type != SecretType.NONE:
        user = ""
        password = ""
        try:
            user = fetch_secret(kube, namespace, credential_secret.type, credential_secret.vault_name, "username")
        except (SecretNotFoundError, SecretAccessError) as e:
            log.error(f"Error fetching main database username from {credential_secret.vault_name}: {e}")
            user = db_url.username
        try:
            password = fetch_secret(kube, namespace, credential_secret.type, credential_secret.vault_name, "password")
        except (SecretNotFoundError, SecretAccessError) as e:
            log.error(f"Error fetching main database password from {credential_secret.vault_name}: {e}")

        if user or password:
            if not user:
                log.error(f"Credential secret {credential_secret.vault_name} gave a password but no username")
            else:
                log.info("Using username/password retrieved from main database credential secret")
                # base64-encoded secrets often carry a trailing newline
                db_url = db_url.with_credentials(user.strip(), password.strip() or db_url.password)

    log.info(f"Using main database connection {db_url}")
    return db_url
