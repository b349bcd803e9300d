"""Loads the handler registration script."""

import logging
import runpy
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from .errors import ConfigError

if TYPE_CHECKING:
    from .simulator import MQTTSimulator

logger = logging.getLogger(__name__)

SCRIPT_LOGGER = "message.handler"


def script_registration(path: str) -> Callable[["MQTTSimulator"], None]:
    """
    Return a registration step that executes the Python script at ``path``.

    The script runs once with two globals: ``simulator`` (the MQTTSimulator,
    used to bind handlers and hooks) and ``logger``.

    Raises:
        ConfigError: the script file does not exist
    """
    script = Path(path)
    if not script.is_file():
        raise ConfigError(f"Handler script not found: {path}")

    def register(simulator: "MQTTSimulator"):
        logger.info(f"Loading handler script {script}")
        runpy.run_path(str(script), init_globals={
            "simulator": simulator,
            "logger": logging.getLogger(SCRIPT_LOGGER),
        })

    return register
