"""Run the chatpair HTTP server."""

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from chatpair.api import create_fastapi_app
from chatpair.api.routes import control
from chatpair.logging_config import get_logger, setup_logging
from sim import Sim

logger = get_logger(__name__)


def main():
    load_dotenv(Path(__file__).resolve().parent.parent / ".env")
    setup_logging()

    host = os.getenv("API_HOST", "localhost")
    port = int(os.getenv("API_PORT", "8000"))

    # The scripted load generator drives the server over its own HTTP API.
    if os.getenv("CHATPAIR_SIM", "1").lower() not in ("0", "false", "no"):
        control.set_sim_instance(Sim(api_url=f"http://{host}:{port}"))
    else:
        logger.info("Simulation disabled")

    logger.info("Serving chatpair on %s:%d", host, port)
    # Our dictConfig already owns the root logger; keep uvicorn off it.
    uvicorn.run(create_fastapi_app(), host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
