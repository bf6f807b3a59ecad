import logging
import sys

import uvicorn

from taggart import create_app
from taggart.config import ConfigStore

logging.basicConfig(level=logging.INFO, format="%(levelname)-9s %(name)s: %(message)s")

config_store = ConfigStore()
config_store.load()
app = create_app(config_store)

if __name__ == "__main__":
    # Frozen builds cannot use the reloader
    is_packaged = getattr(sys, 'frozen', False)

    if is_packaged:
        uvicorn.run(app, host="0.0.0.0", port=config_store.current.server_port)
    else:
        # Change host to 127.0.0.1 if you don't want other devices in your LAN reaching the catalogue
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=config_store.current.server_port,
            reload=True
        )
