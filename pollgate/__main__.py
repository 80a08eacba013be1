"""Run the pollgate service with uvicorn."""

import uvicorn

from pollgate.app.core.config import settings


def main() -> None:
    uvicorn.run(
        "pollgate.app.main:app",
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
