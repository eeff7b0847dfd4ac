"""API server entry point.

Enables execution via: python -m glyphforge (or the glyphforge-api script).
Binds to HOST/PORT from the environment.
"""

import uvicorn

from glyphforge.core.config import Settings


def main() -> None:
    settings = Settings()  # type: ignore[call-arg]
    uvicorn.run(
        "glyphforge.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
