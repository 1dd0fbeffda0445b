# rserve_engine/run_platform.py
"""Run the health monitor and metrics collector until SIGINT/SIGTERM."""

import logging
import signal
import sys
import threading

from rserve_engine.config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    from rserve_engine.container import health_monitor, metrics_collector, spawner

    shutdown = threading.Event()

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, stopping...")
        shutdown.set()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    logger.info("=" * 80)
    logger.info("🚀 RSERVE PLATFORM STARTED")
    logger.info("=" * 80)
    logger.info(f"Docker: {settings.docker_base_url}")
    logger.info(f"Network: {settings.network_name}")
    logger.info(f"Health interval: {settings.health_interval_seconds}s")
    logger.info(f"Metrics interval: {settings.metrics_interval_seconds}s")
    logger.info(f"Traefik metrics: {settings.traefik_metrics_url or 'disabled'}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 80)

    try:
        versions = spawner.list_r_versions()
        logger.info(f"R versions available: {', '.join(versions) or 'none'}")
    except Exception as e:
        logger.warning(f"Docker not reachable yet: {e}")

    try:
        metrics_collector.hydrate_from_db()
        health_monitor.start()
        metrics_collector.start()

        shutdown.wait()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        health_monitor.stop()
        metrics_collector.close()
        logger.info("Platform stopped")


if __name__ == "__main__":
    main()
