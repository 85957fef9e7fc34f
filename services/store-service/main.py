from __future__ import annotations

import logging
import os

from store_service.app import create_app
from store_service.config import Settings

settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn

    # One worker process keeps a single reconciliation scheduler.
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8084")),
        reload=os.environ.get("UVICORN_RELOAD", "false").lower() == "true",
    )
