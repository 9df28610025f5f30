"""
Operator configuration and logging setup

All settings are read once from environment variables at import time.
"""

import os
import sys
import logging
from typing import List


# ANSI color codes
BLUE = "\033[94m"
RED = "\033[91m"
WHITE = "\033[97m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RESET = "\033[0m"


class Config:
    """Operator configuration loaded from environment variables"""

    # Kubernetes settings
    NAMESPACE = os.getenv("NAMESPACE", "site-operator")
    WATCH_NAMESPACES = os.getenv("WATCH_NAMESPACES", "")
    KUBE_REQUEST_TIMEOUT = float(os.getenv("KUBE_REQUEST_TIMEOUT", "30"))

    # Custom resource settings
    API_GROUP = os.getenv("API_GROUP", "core.siteoperator.io")
    API_VERSION = os.getenv("API_VERSION", "v1beta1")
    FINALIZER = os.getenv("FINALIZER", "siteoperator.io/database-cleanup")
    MANAGED_BY_KEY = "app.kubernetes.io/managed-by"
    MANAGED_BY_VALUE = os.getenv("MANAGED_BY_VALUE", "site-operator")

    # PostgreSQL settings
    DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
    # Some managed providers (Azure) only let the admin alter objects owned by
    # roles it is a member of. Turn off where the admin is a real superuser.
    GRANT_ROLE_TO_ADMIN = os.getenv("GRANT_ROLE_TO_ADMIN", "true").lower() == "true"

    # Controller settings
    SYNC_INTERVAL = int(os.getenv("SYNC_INTERVAL", "30"))
    WORKERS = int(os.getenv("WORKERS", "4"))
    DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    METRICS_FILE = os.getenv("METRICS_FILE", "")

    @classmethod
    def api_version(cls) -> str:
        return f"{cls.API_GROUP}/{cls.API_VERSION}"

    @classmethod
    def watch_namespaces(cls) -> List[str]:
        """Namespaces to reconcile; WATCH_NAMESPACES wins over NAMESPACE"""
        if cls.WATCH_NAMESPACES:
            return [ns.strip() for ns in cls.WATCH_NAMESPACES.split(",") if ns.strip()]
        return [cls.NAMESPACE]


# Configure structured logging
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("site-operator")


class KeyValueAdapter(logging.LoggerAdapter):
    """Appends bound key/value pairs to every message"""

    def process(self, msg, kwargs):
        if not self.extra:
            return msg, kwargs
        values = " ".join(f"{k}={v}" for k, v in self.extra.items())
        return f"{msg} [{values}]", kwargs


def with_values(log, **values) -> KeyValueAdapter:
    """
    Bind key/value pairs to a logger or adapter

    Nested calls accumulate, so callers can narrow a logger as it is handed
    down (identity first, then the event, then the object).
    """
    if isinstance(log, KeyValueAdapter):
        merged = {**log.extra, **values}
        return KeyValueAdapter(log.logger, merged)
    return KeyValueAdapter(log, values)
