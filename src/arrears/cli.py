"""Command-line interface for Arrears.

This module serves as the entrypoint for the Arrears controller.
"""

import argparse
import logging
import sys

from prometheus_client import start_http_server

from arrears.config import ArrearsConfig
from arrears.kubernetes.controller import KubernetesController
from arrears.kubernetes.resources.objectstorage import MinioObjectStorageAdmin
from arrears.metrics import NoopMetrics, PrometheusMetrics
from arrears.reconciler import Reconciler


def setup_logging(verbose: bool = False) -> None:
    """Set up logging configuration.

    Args:
        verbose: Whether to enable verbose logging.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(level=log_level, format=log_format, stream=sys.stdout)


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        args: Command-line arguments to parse. If None, sys.argv will be used.

    Returns:
        Parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="arrears",
        description="Kubernetes controller suspending and resuming the namespaces of tenants in debt.",
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    parser.add_argument(
        "--system-namespace",
        help="Namespace holding locks and the suspension config (overrides ARREARS_SYSTEM_NAMESPACE)",
    )

    parser.add_argument(
        "--max-concurrent-reconciles",
        type=int,
        help="Number of namespaces reconciled in parallel (overrides ARREARS_MAX_CONCURRENT_RECONCILES)",
    )

    parser.add_argument(
        "--metrics-port", type=int, help="Port exposing Prometheus metrics (overrides ARREARS_METRICS_PORT)"
    )

    parser.add_argument("--reconcile", metavar="NAMESPACE", help="Reconcile a single namespace once and exit")

    return parser.parse_args(args)


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Arrears controller.

    Args:
        args: Command-line arguments. If None, sys.argv will be used.

    Returns:
        Exit code.
    """
    try:
        parsed_args = parse_args(args)
        setup_logging(parsed_args.verbose)
        logger = logging.getLogger(__name__)
        logger.info("Starting Arrears")

        # Create config from environment variables
        config = ArrearsConfig.from_env()

        # Override with command-line arguments, validating them like the environment
        overrides = {}
        if parsed_args.system_namespace:
            overrides["system_namespace"] = parsed_args.system_namespace
        if parsed_args.max_concurrent_reconciles is not None:
            overrides["max_concurrent_reconciles"] = parsed_args.max_concurrent_reconciles
        if parsed_args.metrics_port is not None:
            overrides["metrics_port"] = parsed_args.metrics_port
        if overrides:
            config = ArrearsConfig.model_validate({**config.model_dump(), **overrides})

        logger.info(
            f"Configuration: system_namespace={config.system_namespace}, "
            f"status_annotation={config.status_annotation}, "
            f"lock_timeout={config.lock_timeout}s, "
            f"max_concurrent_reconciles={config.max_concurrent_reconciles}, "
            f"metrics_port={config.metrics_port or 'disabled'}"
        )

        if config.metrics_port:
            metrics = PrometheusMetrics()
            start_http_server(config.metrics_port)
            logger.info(f"Serving metrics on port {config.metrics_port}")
        else:
            metrics = NoopMetrics()

        object_storage_factory = None
        if config.object_storage_endpoint and config.object_storage_namespace and config.object_storage_admin_secret:
            object_storage_factory = MinioObjectStorageAdmin
            logger.info(f"Managing object storage users through {config.object_storage_endpoint}")

        controller = KubernetesController(
            config=config, metrics=metrics, object_storage_factory=object_storage_factory
        )
        reconciler = Reconciler(config=config, controller=controller)

        if parsed_args.reconcile:
            logger.info(f"Reconciling namespace {parsed_args.reconcile} once")
            result = reconciler.reconcile(parsed_args.reconcile)
            if result.requeue_after:
                logger.warning(f"Namespace {parsed_args.reconcile} needs another reconciliation")
                return 1
        else:
            logger.info("Running continuous reconciliation")
            reconciler.run_reconciliation_loop()

    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted by user")
    except ValueError as e:
        logging.getLogger(__name__).error(f"Configuration error: {e}")
        return 1
    except Exception as e:
        logging.getLogger(__name__).error(f"An unexpected error occurred: {e}")
        return 1

    logging.getLogger(__name__).info("Arrears exiting")
    return 0


if __name__ == "__main__":
    sys.exit(main())
