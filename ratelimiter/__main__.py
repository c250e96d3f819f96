import uvicorn

from ratelimiter.app.core.config import settings


def main() -> None:
    uvicorn.run(
        "ratelimiter.app.main:app",
        host="0.0.0.0",
        port=settings.app_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
