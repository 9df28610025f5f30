"""
Typed views of the custom resources the operator consumes
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from settings import Config
from kube import ObjectKey


POSTGRES_DATABASE_KIND = "PostgresDatabase"


class SecretType:
    KUBERNETES = "kubernetes"
    AWS = "aws"
    TEST = "test"
    NONE = ""


@dataclass
class SecretConfig:
    """Where a credential lives"""
    vault_name: str = ""
    type: str = SecretType.NONE

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "SecretConfig":
        data = data or {}
        return cls(vault_name=data.get("vaultName", ""), type=data.get("type", SecretType.NONE))

    def to_dict(self) -> Dict:
        out = {}
        if self.vault_name:
            out["vaultName"] = self.vault_name
        if self.type:
            out["type"] = self.type
        return out


@dataclass
class Teardown:
    drop: bool = False


@dataclass
class PostgresDatabaseSpec:
    """Declared state of one logical database"""
    url: str
    schemas: List[str] = field(default_factory=list)
    extensions: List[str] = field(default_factory=list)
    teardown: Teardown = field(default_factory=Teardown)
    secret: SecretConfig = field(default_factory=SecretConfig)
    workload_secret: SecretConfig = field(default_factory=SecretConfig)
    main_database_credential_secret: SecretConfig = field(default_factory=SecretConfig)
    secret_password_key: str = ""
    secret_vault: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "PostgresDatabaseSpec":
        # schemas are an ordered set
        schemas = list(dict.fromkeys(data.get("schemas") or []))
        return cls(
            url=data.get("url", ""),
            schemas=schemas,
            extensions=list(data.get("extensions") or []),
            teardown=Teardown(drop=bool((data.get("teardown") or {}).get("drop", False))),
            secret=SecretConfig.from_dict(data.get("secret")),
            workload_secret=SecretConfig.from_dict(data.get("workloadSecret")),
            main_database_credential_secret=SecretConfig.from_dict(
                data.get("mainDbCredentialSecret") or data.get("mainDatabaseCredentialSecret")
            ),
            secret_password_key=data.get("secretPasswordKey", ""),
            secret_vault=data.get("secretVault", ""),
        )

    def to_dict(self) -> Dict:
        return {
            "url": self.url,
            "schemas": list(self.schemas),
            "extensions": list(self.extensions),
            "teardown": {"drop": self.teardown.drop},
            "secret": self.secret.to_dict(),
            "workloadSecret": self.workload_secret.to_dict(),
            "mainDbCredentialSecret": self.main_database_credential_secret.to_dict(),
            "secretPasswordKey": self.secret_password_key,
            "secretVault": self.secret_vault,
        }


@dataclass
class PostgresDatabase:
    """A PostgresDatabase manifest with its spec parsed"""
    manifest: Dict
    spec: PostgresDatabaseSpec

    @classmethod
    def from_manifest(cls, manifest: Dict) -> "PostgresDatabase":
        return cls(manifest=manifest, spec=PostgresDatabaseSpec.from_dict(manifest.get("spec") or {}))

    @property
    def metadata(self) -> Dict:
        return self.manifest.setdefault("metadata", {})

    @property
    def key(self) -> ObjectKey:
        return ObjectKey.of(self.manifest)

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.metadata.get("deletionTimestamp")

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None


@dataclass
class PostgresDatabaseConfig:
    """Site-level database settings shared by every product"""
    host: str = ""
    ssl_mode: str = ""
    drop_on_teardown: bool = False
    schema: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "PostgresDatabaseConfig":
        data = data or {}
        return cls(
            host=data.get("host", ""),
            ssl_mode=data.get("sslMode", ""),
            drop_on_teardown=bool(data.get("dropOnTeardown", False)),
            schema=data.get("schema", ""),
        )


def postgres_database_key(namespace: str, name: str) -> ObjectKey:
    return ObjectKey(Config.api_version(), POSTGRES_DATABASE_KIND, namespace, name)
