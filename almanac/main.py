from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("ALMANAC_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    host = os.getenv("ALMANAC_HOST", "0.0.0.0")
    port = int(os.getenv("ALMANAC_PORT", "8080"))
    uvicorn.run("almanac.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
