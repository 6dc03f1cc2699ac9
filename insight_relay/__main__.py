"""Run the API server: python -m insight_relay"""
import uvicorn

from insight_relay.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("insight_relay.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
