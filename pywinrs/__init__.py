# Copyright: (c) 2018, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import json
import logging
import logging.config
import os

from pywinrs.config import ConnectionOptions, TransportKind
from pywinrs.exceptions import (
    AuthenticationError,
    ConfigurationError,
    InvalidShellStateError,
    MalformedResponseError,
    UnsupportedTransportError,
    WinRMError,
    WinRMTransportError,
    WSManFaultError,
)
from pywinrs.executor import CommandExecutor
from pywinrs.output import Output, OutputDecoder
from pywinrs.service import ShellOptions, WinRMService


def _setup_logging(logger: logging.Logger) -> None:
    log_path = os.environ.get("PYWINRS_LOG_CFG", None)

    if log_path is not None and os.path.exists(log_path):  # pragma: no cover
        # log log config from JSON file
        with open(log_path, "rt") as f:
            config = json.load(f)

        logging.config.dictConfig(config)
    else:
        # no logging was provided
        logger.addHandler(logging.NullHandler())


logger = logging.getLogger(__name__)
_setup_logging(logger)

__all__ = [
    "AuthenticationError",
    "CommandExecutor",
    "ConfigurationError",
    "ConnectionOptions",
    "InvalidShellStateError",
    "MalformedResponseError",
    "Output",
    "OutputDecoder",
    "ShellOptions",
    "TransportKind",
    "UnsupportedTransportError",
    "WinRMError",
    "WinRMService",
    "WinRMTransportError",
    "WSManFaultError",
]
