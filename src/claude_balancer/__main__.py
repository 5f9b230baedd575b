"""Process entry point: ``python -m claude_balancer`` or ``claude-balancer``."""

import logging
import sys

import uvicorn

from .config import ConfigError, load_config

logger = logging.getLogger("claude_balancer")


def main() -> int:
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    # Validate before binding a socket; the app lifespan loads it again
    try:
        cfg = load_config()
    except ConfigError as e:
        logger.critical("Invalid configuration: %s", e)
        return 1

    uvicorn.run("claude_balancer.main:app", host=cfg.host, port=cfg.port, log_level=cfg.log_level)
    return 0


if __name__ == "__main__":
    sys.exit(main())
