from __future__ import annotations

import logging

import uvicorn

from token_vault import config


def main() -> None:
    logging.basicConfig(
        level=config.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = config.getenv("API_PORT", "8080")
    try:
        port_number = int(port)
    except ValueError as exc:
        raise SystemExit(f"{config.env_name('API_PORT')} must be an integer, got {port!r}") from exc

    uvicorn.run(
        "token_vault.api:create_app",
        factory=True,
        host=config.getenv("API_HOST", "127.0.0.1"),
        port=port_number,
        log_config=None,
    )


if __name__ == "__main__":
    main()
