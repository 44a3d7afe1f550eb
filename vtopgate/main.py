"""
vtopgate: Entry point.

Starts the background event loop, schedules the session sweep on it and
serves the Flask app.
"""

import logging

from vtopgate.config import settings
from vtopgate.server import LoopRunner, create_app
from vtopgate.service import build_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("vtopgate")


def main() -> None:
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info("vtopgate starting...")

    runner = LoopRunner()
    runner.start()
    service = None
    try:
        service = build_service()
        runner.run(service.start())
        app = create_app(service, runner)
        logger.info("Serving on %s:%d", settings.server_host, settings.server_port)
        app.run(host=settings.server_host, port=settings.server_port, threaded=True)
    except (KeyboardInterrupt, SystemExit):
        logger.info("vtopgate received shutdown signal.")
    except Exception:
        logger.critical("vtopgate crashed with unexpected error", exc_info=True)
    finally:
        # Close portal clients to release connection pools and SSL contexts.
        if service is not None:
            try:
                runner.run(service.shutdown())
            except Exception:
                logger.warning("Failed to shut down service", exc_info=True)
        runner.stop()
        logger.info("vtopgate stopped.")


if __name__ == "__main__":
    main()
