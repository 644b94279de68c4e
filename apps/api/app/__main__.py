import os

import uvicorn

from app.core.logging import configure_logging, get_logger
from app.core.settings import get_settings

logger = get_logger("api.main")


def main() -> None:
    configure_logging()
    settings = get_settings()
    host = os.getenv("API_HOST", settings.API_HOST)
    port = int(os.getenv("PORT", str(settings.API_PORT)))
    logger.info(
        "api.serve",
        extra={"component": "api", "host": host, "port": port, "env": settings.REFLECT_ENV},
    )
    uvicorn.run("app.main:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
