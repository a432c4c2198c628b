"""
Reusable logging and print setup for all parts of the project.

Functions:
    setup_logging      - Configure the root logger with the append-only run log.
    set_print_logger   - Set the logger for the print_* helpers.
    print_and_log      - Print and log an info message.
    print_success      - Print in green and log an info message.
    print_warning      - Print in yellow and log a warning.
    print_error        - Print to stderr in red and log an error.
"""

import logging
import os
import sys
from typing import Optional

from rich import print as rich_print
from rich.markup import escape

APP_NAME = "os-factory"
LOG_FORMAT = '%(asctime)s %(levelname)s %(process)d %(message)s'

# Module-level variable to hold the logger for the print_* helpers
_print_logger: Optional[logging.Logger] = None


def default_logfile(app_name: str = APP_NAME) -> str:
    """Return ~/.<app_name>/deploy.log without creating anything."""
    return os.path.join(os.path.expanduser(f"~/.{app_name}"), "deploy.log")


def setup_logging(app_name: str = APP_NAME, loglevel: int = logging.INFO, logfile: Optional[str] = None) -> logging.Logger:
    """
    Set up logging for the application.
    Logs go to a file opened in append mode, ~/.<app_name>/deploy.log unless a
    custom logfile is given. The file is never truncated.
    Returns the configured logger.
    """
    logger = logging.getLogger()
    logger.setLevel(loglevel)
    if logfile is None:
        logfile = default_logfile(app_name)
    log_dir = os.path.dirname(os.path.abspath(logfile))
    os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(logfile, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Remove any existing handlers
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    logger.addHandler(handler)
    set_print_logger(logger)
    logger.info(f"[{app_name}] Logging to {logfile}")
    return logger


def set_print_logger(logger: Optional[logging.Logger]):
    """
    Set the logger to be used by the print_* helpers.
    Called by setup_logging.
    """
    global _print_logger
    _print_logger = logger


def print_and_log(message: str, **kwargs):
    """
    Print to console (via rich) and log as info.
    """
    rich_print(escape(message), **kwargs)
    if _print_logger is not None:
        _print_logger.info(message)


def print_success(message: str, **kwargs):
    rich_print(f'[green]{escape(message)}[/green]', **kwargs)
    if _print_logger is not None:
        _print_logger.info(f"SUCCESS: {message}")


def print_warning(message: str, **kwargs):
    rich_print(f'[yellow]WARNING:[/yellow] {escape(message)}', **kwargs)
    if _print_logger is not None:
        _print_logger.warning(message)


def print_error(message: str, **kwargs):
    """
    Print and log an error message (stderr and error level), using the logger set by set_print_logger.
    """
    rich_print(f'[bold red]{escape(message)}[/bold red]', file=sys.stderr, **kwargs)
    if _print_logger is not None:
        _print_logger.error(message)
