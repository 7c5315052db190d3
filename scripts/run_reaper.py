"""Runs the expiry reaper as a standalone worker (no API process needed)."""

import logging
import os
import signal

from reservation_engine.application.engine import build_engine


logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = build_engine()
    reaper = engine.reaper

    def _shutdown(signum, frame) -> None:
        logger.info("Signal %s received, stopping reaper", signum)
        reaper.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    reaper.sweep_once()
    reaper.start()
    signal.pause()


if __name__ == "__main__":
    main()
