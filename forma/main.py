from __future__ import annotations

import logging
import os

import uvicorn

from forma.config_manager import ConfigManager


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, force=True)


def main() -> None:
    config = ConfigManager(os.getenv("FORMA_CONFIG_PATH", "config.yaml")).load()
    configure_logging(config.logging.level)
    host = os.getenv("FORMA_HOST", "127.0.0.1")
    port = int(os.getenv("FORMA_PORT", "8080"))
    uvicorn.run("forma.web_api:create_app", factory=True, host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
