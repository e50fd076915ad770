"""Run the chat API with uvicorn: python -m chatsync"""

import uvicorn

from chatsync.config import settings


def main() -> None:
    uvicorn.run(
        "chatsync.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=False,
    )


if __name__ == "__main__":
    main()
