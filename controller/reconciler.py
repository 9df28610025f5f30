"""
Per-kind reconcile entry points

A reconciler is invoked with an object key, level-triggered and at least
once. It never retries in-process: an error in the result tells the caller
to deliver the key again later.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from settings import Config, logger, with_values, RED, RESET
from exceptions import ConfigurationError
from kube import ObjectKey
from models import PostgresDatabase, POSTGRES_DATABASE_KIND
from provisioner import DatabaseProvisioner


@dataclass
class ReconcileResult:
    """Outcome of one reconcile invocation"""
    key: ObjectKey
    operation: str = ""
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def requeue(self) -> bool:
        return self.error is not None

    @property
    def retryable(self) -> bool:
        """Configuration errors recur until the resource itself is fixed"""
        return self.error is not None and not isinstance(self.error, ConfigurationError)


class Reconciler:
    """
    Present/absent dispatch for one resource kind

    Subclasses implement converge() and may override cleanup().
    """

    api_version: str = ""
    kind: str = ""

    def __init__(self, kube, log=None):
        self.kube = kube
        self.log = log or logger

    def key(self, namespace: str, name: str) -> ObjectKey:
        return ObjectKey(self.api_version, self.kind, namespace, name)

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        log = with_values(self.log, object=str(key))

        try:
            obj = self.kube.get(key)
        except Exception as e:
            log.error(f"Error fetching object: {e}")
            return ReconcileResult(key, "get", e)

        if obj is None:
            log.info("Object not found; it must have been deleted")
            try:
                self.cleanup(key, log)
            except Exception as e:
                # the declared object is gone, nothing left to block on
                log.error(f"Cleanup failed: {e}", exc_info=True)
            return ReconcileResult(key, "cleanup")

        operation = self.operation_for(obj)
        try:
            self.converge(obj, log)
        except Exception as e:
            log.error(f"{RED}Reconcile failed during {operation}: {e}{RESET}")
            return ReconcileResult(key, operation, e)

        return ReconcileResult(key, operation)

    def operation_for(self, obj: Dict) -> str:
        return "converge"

    def converge(self, obj: Dict, log):
        raise NotImplementedError

    def cleanup(self, key: ObjectKey, log):
        """Runs when the object is gone; must be safe when nothing exists"""


class PostgresDatabaseReconciler(Reconciler):
    """Reconciles PostgresDatabase objects against the database server"""

    kind = POSTGRES_DATABASE_KIND

    def __init__(self, kube, provisioner: DatabaseProvisioner = None, log=None, metrics=None):
        super().__init__(kube, log)
        self.api_version = Config.api_version()
        self.provisioner = provisioner or DatabaseProvisioner(
            kube, log=self.log, metrics=metrics, dry_run=Config.DRY_RUN
        )

    def operation_for(self, obj: Dict) -> str:
        if (obj.get("metadata") or {}).get("deletionTimestamp"):
            return "cleanup-database"
        return "create-database"

    def converge(self, obj: Dict, log):
        pgd = PostgresDatabase.from_manifest(obj)
        if pgd.being_deleted:
            log.info("PostgresDatabase found; deleting database")
            self.provisioner.cleanup_database(pgd)
        else:
            log.info("PostgresDatabase found; reconciling database")
            self.provisioner.create_database(pgd)

    def cleanup(self, key: ObjectKey, log):
        # the finalizer held the object until the database was torn down
        log.debug("Nothing to clean up for a deleted PostgresDatabase")
