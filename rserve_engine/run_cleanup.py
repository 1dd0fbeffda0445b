# rserve_engine/run_cleanup.py
"""Remove every container and image managed by the platform."""

import logging
import sys

from rserve_engine.spawner.docker_spawner import DockerSpawner

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    logger.info("🧹 Removing all managed containers and images...")

    try:
        containers, images = DockerSpawner().cleanup_all()
    except Exception as e:
        logger.error(f"Cleanup failed: {e}", exc_info=True)
        sys.exit(1)

    logger.info(f"✅ Removed {containers} container(s) and {images} image(s)")


if __name__ == "__main__":
    main()
