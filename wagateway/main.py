from __future__ import annotations

import logging
import os

import uvicorn


def init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    logging.getLogger("wagateway").setLevel(level)


def main() -> None:  # pragma: no cover - CLI entrypoint
    init_logging()
    from .config import gateway_config

    cfg = gateway_config()
    uvicorn.run(
        "wagateway.api:create_app",
        host="0.0.0.0",
        port=cfg.port,
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
