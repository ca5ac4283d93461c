"""Run the chat service with uvicorn: ``python -m marketchat``."""
import uvicorn

from marketchat.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "marketchat.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
