# Copyright (c) 2024 Digital Asset (Switzerland) GmbH and/or its affiliates. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
import os
import sys
from typing import Optional

import colorlog

ROOT_LOGGER = "acs_sync"

cli_handler = colorlog.StreamHandler()
cli_handler.setFormatter(
    colorlog.ColoredFormatter(
        "%(log_color)s%(levelname)s:%(name)s:%(message)s",
        log_colors={
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "red,bg_white",
        },
    )
)


def get_logger(name):
    return colorlog.getLogger(name)


def setup_logging(loglevel, file_path: Optional[str] = None):
    """Attach the console handler (and a file handler when a path is given)
    to the package logger. Safe to call more than once."""
    logger = colorlog.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.addHandler(cli_handler)

    if file_path:
        # Ensure the log directory exists
        log_directory = os.path.dirname(file_path)
        if log_directory and not os.path.exists(log_directory):
            os.makedirs(log_directory)

        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(
            logging.Formatter("%(levelname)s:%(name)s:%(asctime)s:%(message)s")
        )
        logger.addHandler(file_handler)

    logger.setLevel(loglevel)
    return logger


def log_uncaught_exceptions():
    # Set up exception handling (write unhandled exceptions to log)
    logger = colorlog.getLogger(ROOT_LOGGER)

    def handle_exception(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.error(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback)
        )

    sys.excepthook = handle_exception
