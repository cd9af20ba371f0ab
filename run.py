"""Convenience runner for the Courier Sync API."""

import uvicorn

from apps.courier.settings import settings


def main():
    uvicorn.run(
        "apps.courier.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=True,
        reload_dirs=["apps"],
    )


if __name__ == "__main__":
    main()
