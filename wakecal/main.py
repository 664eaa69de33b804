from __future__ import annotations

import logging
import os

import uvicorn

from wakecal.config_manager import ConfigManager


def main() -> None:
    config = ConfigManager(os.getenv("WAKECAL_CONFIG_PATH", "config.yaml")).load()
    logging.basicConfig(
        level=getattr(logging, config.logging.level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("WAKECAL_HOST", "0.0.0.0")
    port = int(os.getenv("WAKECAL_PORT", "8080"))
    uvicorn.run("wakecal.web_admin:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
