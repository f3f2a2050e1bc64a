"""Entry point for the tailship agent."""

import logging
import signal
import sys
import threading

from tailship.agent import Agent
from tailship.config import load_config


def main(argv: list[str] | None = None):
    config = load_config(argv)

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger = logging.getLogger(__name__)

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    key_hint = config.key[:min(len(config.key), 10)] + "..." if config.key else "<none>"
    logger.info("Starting tailship agent: env=%s, key=%s, base_url=%s, streams=%d",
                config.env, key_hint, config.base_url, len(config.streams))

    agent = Agent(config, shutdown_event)
    if config.stdin:
        agent.run_stdin()
    else:
        agent.run()


if __name__ == "__main__":
    main()
