"""Run the API with uvicorn.

Example:
  python -m posbill
"""
import uvicorn

from posbill.config import settings


def main() -> None:
    uvicorn.run(
        "posbill.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_config=None,
    )


if __name__ == "__main__":
    main()
