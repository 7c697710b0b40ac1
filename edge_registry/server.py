from __future__ import annotations

import os

import structlog
import uvicorn

from edge_registry.app import create_app
from edge_registry.settings import load_settings


_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40, "critical": 50}


def configure_logging(level: str | None = None) -> None:
    name = str(level or os.getenv("LOG_LEVEL", "info")).strip().lower()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(name, 20)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    configure_logging()
    host = os.getenv("EDGE_REGISTRY_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("EDGE_REGISTRY_PORT", "8112"))
    settings = load_settings()
    app = create_app(settings)
    level = os.getenv("LOG_LEVEL", "info").strip().lower()
    uvicorn.run(app, host=host, port=port, log_level=level if level in _LEVELS else "info")


if __name__ == "__main__":
    main()
