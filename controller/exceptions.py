"""
Error taxonomy for the operator.

Configuration errors recur until the declared resource is fixed; everything
else (connection failures, API conflicts) is raised by psycopg2 or the
kubernetes client and is retried by the next delivery.
"""


class OperatorError(Exception):
    """Base class for errors raised by the operator itself."""


class ConfigurationError(OperatorError):
    """The declared resource or site configuration cannot be satisfied."""


class InvalidPostgresLabel(ConfigurationError):
    """A role, database or schema name is not a safe SQL identifier."""

    def __init__(self, label: str, reason: str):
        self.label = label
        self.reason = reason
        super().__init__(f"invalid postgres label {label!r}: {reason}")


class MissingCredentials(ConfigurationError):
    """No usable username or password for a database URL."""


class MismatchedDatabaseHost(ConfigurationError):
    """The declared database does not live on the main database server."""


class MissingMainDatabaseURL(ConfigurationError):
    """The main (administrative) database URL could not be determined."""


class InvalidSecretType(ConfigurationError):
    """A secret reference names a vault type this operator cannot read."""


class SecretNotFoundError(OperatorError):
    """A secret key was not found in its vault."""

    def __init__(self, secret_type: str, vault_name: str, key: str, cause: object = None):
        self.secret_type = secret_type
        self.vault_name = vault_name
        self.key = key
        super().__init__(
            f"secret key '{key}' not found in vault '{vault_name}' (type: {secret_type}): {cause}"
        )


class SecretAccessError(OperatorError):
    """The secret store could not be read."""

    def __init__(self, secret_type: str, vault_name: str, key: str, cause: object = None):
        self.secret_type = secret_type
        self.vault_name = vault_name
        self.key = key
        super().__init__(
            f"access error fetching secret key '{key}' from vault '{vault_name}' (type: {secret_type}): {cause}"
        )


class NotManagedError(OperatorError):
    """An existing object is not labelled as managed by this operator."""

    def __init__(self, kind: str, name: str, managed_by: str):
        super().__init__(f"{kind} {name} is not managed by {managed_by}")
