""" Helper and utility functions for the library. """

import json
import logging
import os
import platform
import subprocess
import sys

from rich import get_console, reconfigure
from rich.logging import RichHandler

TIMESTAMP_FORMAT = "%Y-%m-%d-T%H%M%S"
"""The datetime format string used for timestamps in run reference names."""
CONFIGURATION_FILE = "headfactory_config.json"
"""The expected configuration filename."""

CONFIG_DEFAULTS = {
    "pipelines_module_name": "headfactory.pipelines",
    "workspaces_path": "data/workspaces",
    "logs_path": "logs/",
    "reports_path": "reports/",
    "report_css_path": "reports/style.css",
}

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()

_MEMORY_UNITS = [(10**9, "GB"), (10**6, "MB"), (10**3, "KB")]
_LONG_TIME_UNITS = [(60 * 60, "h"), (60, "m")]
_SHORT_TIME_UNITS = [(1e-7, "ns", 10**9), (1e-4, "us", 10**6), (0.1, "ms", 10**3)]


def get_configuration() -> dict[str, str]:
    """Load the configuration file if available, with defaults for any
    keys not found. The config file should be "headfactory_config.json"
    in the project root (or up to three parent directories above the
    current one.) Paths in a config file found further up are made relative
    to the current directory.

    The defaults are:

    .. code-block:: json

        {
            "pipelines_module_name": "headfactory.pipelines",
            "workspaces_path": "data/workspaces",
            "logs_path": "logs/",
            "reports_path": "reports/",
            "report_css_path": "reports/style.css",
        }

    Returns:
        the dictionary of configuration keys/values.
    """
    prefix = ""
    for _ in range(4):
        if os.path.exists(prefix + CONFIGURATION_FILE):
            break
        prefix += "../"
    else:
        return dict(CONFIG_DEFAULTS)

    with open(prefix + CONFIGURATION_FILE) as infile:
        config = {**CONFIG_DEFAULTS, **json.load(infile)}

    # module names are left alone
    return {
        key: f"{prefix}{value}" if key.endswith("_path") else value
        for key, value in config.items()
    }


def human_readable_mem_usage(byte_count: int) -> str:
    """Format a byte count with a B/KB/MB/GB suffix. Memory deltas can be negative.

    Args:
        byte_count (int): The number of bytes to convert.
    """
    sign = "-" if byte_count < 0 else ""
    size = abs(byte_count)
    for scale, suffix in _MEMORY_UNITS:
        if size > scale:
            return f"{sign}{size / scale:.2f}{suffix}"
    return f"{sign}{size:.2f}B"


def human_readable_time(seconds: float) -> str:
    """Format a duration in seconds with the most sensible suffix (ns up to h.)"""
    for scale, suffix in _LONG_TIME_UNITS:
        if seconds > scale:
            return f"{seconds / scale:.2f}{suffix}"
    for limit, suffix, factor in _SHORT_TIME_UNITS:
        if seconds < limit:
            return f"{seconds * factor:.2f}{suffix}"
    return f"{seconds:.2f}s"


def get_command_output(cmd, silent=False) -> str:
    """Runs the command passed and returns the stripped string output of the command,
    or an empty string if the command can't be run or exits non-zero. Nothing is
    written to the console either way.

    Args:
        cmd: Either a string command or array of strings, as one would pass to
            :code:`subprocess.run()`
        silent (bool): Don't warn if the command could not be run.
    """
    try:
        completed = subprocess.run(cmd, capture_output=True)
    except OSError as e:
        if not silent:
            logging.warning("Unable to run command '%s': %s" % (cmd, e))
        return ""
    if completed.returncode != 0:
        return ""
    return completed.stdout.decode("utf-8").strip()


def get_current_commit() -> str:
    """The hash of the checked out git commit, or an empty string outside of a repo."""
    return get_command_output(["git", "rev-parse", "HEAD"], silent=True)


def get_os() -> str:
    return str(platform.platform())


def set_logging_prefix(prefix):
    """Tag every following log record with a prefix (the label of the variant currently
    executing), which the formatters set up in :code:`init_logging()` include."""

    # the base factory is always the one wrapped, so that repeated calls don't nest
    def prefixed_factory(*args, **kwargs):
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        record.prefix = prefix
        return record

    logging.setLogRecordFactory(prefixed_factory)


def init_logging(
    log_path=None,
    level=logging.INFO,
    include_thread=False,
    no_color=False,
    quiet=False,
    plain=False,
):
    """Sets up logging configuration, including the associated file output.

    Args:
        log_path (str): File to write the log to. If :code:`None`, only log
            to console.
        level: The logging level to output.
        include_thread (bool): Whether to include the thread name in the logger.
            This is mostly only used when branch variants run in parallel, to
            help track which log message is from which worker.
        no_color (bool): Suppress colors in console output.
        quiet (bool): Suppress all console log output.
        plain (bool): Output plain text log rather than rich output.
    """
    thread = "{%(threadName)s} - " if include_thread else ""
    plain_formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] - " + thread + "%(prefix)s%(message)s"
    )
    rich_formatter = logging.Formatter(thread + "%(prefix)s%(message)s")

    if plain:
        # 4 characters so that it lines up all nice
        logging.addLevelName(logging.DEBUG, "DBUG")
    elif no_color:
        reconfigure(no_color=True)
    set_logging_prefix("")

    handlers = []
    if log_path is not None:
        os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(plain_formatter)
        handlers.append(file_handler)
    if not quiet and plain:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(plain_formatter)
        handlers.append(console_handler)
    elif not quiet:
        console_handler = RichHandler(
            console=get_console(),
            show_time=True,
            show_level=True,
            show_path=True,
            rich_tracebacks=True,
            log_time_format="%X",
            keywords=["-----", "(branch)", "(variant)", "(gate)"],
        )
        console_handler.setFormatter(rich_formatter)
        handlers.append(console_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = handlers

    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("graphviz").setLevel(logging.WARNING)


def slugify(label: str) -> str:
    """Turn a human-readable label (e.g. a variant comment like 'DUNEuro FEM EEG DTI')
    into something safe for artifact names and file paths."""
    cleaned = "".join(c.lower() if c.isalnum() else "_" for c in label)
    while "__" in cleaned:
        cleaned = cleaned.replace("__", "_")
    return cleaned.strip("_")
