"""GCP Service Account Operator - Entry point."""

import logging
import os
import signal
import sys
from dotenv import load_dotenv

from .backends import get_backend
from .config import Config
from .errors import ConfigError, OperatorError
from .metrics import MetricsServer
from .operator import Operator
from .reconciler import Reconciler
from .resources import ResourceGateway, ResourceStore, SecretKind, ServiceAccountKind
from .utils import get_k8s_api

logger = logging.getLogger("gcp-service-account-operator")


def main():
    """Main entry point for the GCP Service Account Operator."""
    # Load environment variables from .env file
    load_dotenv()

    try:
        config = Config.from_env(os.environ)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(str(e))
        sys.exit(1)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Start up the server to expose the metrics.
    metrics_server = MetricsServer(port=config.metrics_port)
    metrics_server.start()

    logger.info(f"Prometheus metrics server started on port {config.metrics_port}.")
    logger.info(f"Log level set to: {config.log_level}")
    logger.info(
        f"Running in mode '{config.mode.value}' for project '{config.service_account_project_id}'.")

    logger.info(f"Initializing backend '{config.backend_name}'...")
    try:
        backend = get_backend(config.backend_name, config)
    except Exception as e:
        logger.error(f"Failed to initialize backend '{config.backend_name}': {e}")
        sys.exit(1)

    logger.info("Testing backend connection...")
    try:
        backend.test_connection()
    except OperatorError as e:
        logger.error(f"Backend connection test failed: {e}")
        sys.exit(1)

    v1_api = get_k8s_api()
    gateways = [
        ResourceGateway(ResourceStore(v1_api, SecretKind())),
        ResourceGateway(ResourceStore(v1_api, ServiceAccountKind())),
    ]
    reconciler = Reconciler(config, backend)
    operator = Operator(reconciler, gateways, config)

    # Setup signal handlers for graceful shutdown
    def signal_handler(signum, frame):
        signal_name = 'SIGTERM' if signum == signal.SIGTERM else 'SIGINT'
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        operator.shutdown()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("Signal handlers registered. Starting operator...")

    try:
        operator.run()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
        operator.shutdown()
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)

    metrics_server.stop()
    logger.info("Operator shutdown complete.")
    sys.exit(0)


if __name__ == '__main__':
    main()
