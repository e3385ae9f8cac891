from __future__ import annotations

import os

import uvicorn

from homework_hub.config_manager import ConfigManager
from homework_hub.log_setup import setup_logging


def main() -> None:
    config = ConfigManager.from_env().load()
    setup_logging(config.logging.level, json_output=config.logging.json)
    host = os.getenv("HOMEWORK_HUB_HOST", "0.0.0.0")
    port = int(os.getenv("HOMEWORK_HUB_PORT", "8080"))
    uvicorn.run(
        "homework_hub.web_app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=False,
        log_config=None,
    )


if __name__ == "__main__":
    main()
