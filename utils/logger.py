"""Universal logfire for the application."""

import logfire
from logging import getLogger

from fastapi import FastAPI


# Stdlib loggers are forwarded to logfire by the handler installed in main
def get_logfire(name: str = "KarmaCommunity"):
    """Get a logfire instance with optional context name."""
    return getLogger(name)


def instrument_libraries(app: FastAPI):
    """Instrument the web app and the libraries it talks to for better observability."""
    logfire.instrument_fastapi(app)
    logfire.instrument_httpx()
    logfire.instrument_pymongo()
    logfire.instrument_redis()
