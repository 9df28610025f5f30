"""
Site Operator - PostgresDatabase controller for Kubernetes

Keeps PostgresDatabase resources converged against the site's PostgreSQL
server: roles, databases, schemas, extensions and finalizer-gated teardown.

Features:
- Level-triggered reconciles on a fixed resync interval
- Worker pool across objects, never two reconciles of the same object at once
- Retry by re-delivery on the next pass, no in-process retry loops
- Structured logging with bound key/value context
- Dry-run mode support
- Prometheus metrics exposure
"""

import sys
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import List

from settings import Config, logger, BLUE, GREEN, WHITE, RESET
from kube import KubernetesClient, ObjectKey
from metrics import Metrics, ReconciliationStats
from reconciler import PostgresDatabaseReconciler, ReconcileResult


class SiteOperatorController:
    """
    Main controller driving the PostgresDatabase reconciler
    """

    def __init__(self, kube=None, reconciler=None, metrics=None):
        self.k8s_client = kube or KubernetesClient()
        self.metrics = metrics or Metrics()
        self.reconciler = reconciler or PostgresDatabaseReconciler(self.k8s_client, metrics=self.metrics)
        logger.info("Site Operator controller initialized")

    def list_keys(self) -> List[ObjectKey]:
        keys = []
        for namespace in Config.watch_namespaces():
            for obj in self.k8s_client.list(self.reconciler.api_version, self.reconciler.kind, namespace):
                keys.append(ObjectKey.of(obj))
        return keys

    def sync(self, stats: ReconciliationStats) -> List[ReconcileResult]:
        """
        Reconcile every watched object once

        Each key appears once per pass and the pass finishes before the next
        one starts, so no object is reconciled concurrently with itself.
        """
        keys = self.list_keys()
        stats.objects_seen = len(keys)

        with ThreadPoolExecutor(max_workers=max(1, Config.WORKERS)) as pool:
            results = list(pool.map(self.reconciler.reconcile, keys))

        for result in results:
            if result.ok:
                stats.reconciled += 1
                continue
            stats.errors += 1
            if not result.retryable:
                stats.configuration_errors += 1
                logger.error(f"{result.key}: configuration error during {result.operation}, fix the resource: {result.error}")
            else:
                logger.warning(f"{result.key}: {result.operation} failed, retrying next pass: {result.error}")
        return results

    def write_metrics(self):
        if not Config.METRICS_FILE:
            return
        try:
            Path(Config.METRICS_FILE).write_text(self.metrics.export_prometheus())
        except IOError as e:
            logger.error(f"Error writing metrics file: {e}")

    def run_reconciliation_loop(self):
        """
        Main control loop that runs continuously
        """
        logger.info(f"{GREEN}Controller started (DRY_RUN={Config.DRY_RUN}){RESET}")
        logger.info(f"Sync interval: {Config.SYNC_INTERVAL}s, workers: {Config.WORKERS}")
        logger.info(f"Watching namespaces: {', '.join(Config.watch_namespaces())}")

        while True:
            stats = ReconciliationStats(start_time=datetime.now())

            try:
                logger.info("=" * 60)
                logger.info("Starting reconciliation cycle")

                self.sync(stats)

                stats.end_time = datetime.now()
                self.metrics.record_reconciliation(stats)

                # Print summary
                logger.info("=" * 60)
                logger.info(f"{WHITE}Reconciliation Summary:{RESET}")
                logger.info(f"  • Objects seen: {stats.objects_seen}")
                logger.info(f"  • Reconciled: {stats.reconciled}")
                logger.info(f"  • Errors: {stats.errors} ({stats.configuration_errors} configuration)")
                logger.info(f"  • Duration: {stats.duration_seconds():.2f}s")
                logger.info("=" * 60)

            except Exception as e:
                logger.error(f"Unexpected error in reconciliation loop: {e}", exc_info=True)
                stats.errors += 1
                stats.end_time = datetime.now()
                self.metrics.record_reconciliation(stats)

            self.write_metrics()

            # Sleep until next cycle
            logger.info(f"{BLUE}Sleeping for {Config.SYNC_INTERVAL}s...{RESET}")
            time.sleep(Config.SYNC_INTERVAL)

    def cleanup(self):
        """Cleanup resources"""
        logger.info("Shutting down controller...")
        self.write_metrics()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Main entry point"""
    controller = None
    try:
        controller = SiteOperatorController()
        controller.run_reconciliation_loop()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if controller:
            controller.cleanup()


if __name__ == "__main__":
    main()
