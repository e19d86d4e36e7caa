"""Logging for pci-passthrough.

The library only attaches a NullHandler; launchers opt into output with
configure_logging(). Every module logs structured context through
``extra={...}`` (vm_id, pci_id, slot, ...). The launcher handler renders
those fields after the message so a stderr line alone tells which VM and
which device it concerns:

    INFO [2026-02-25 10:02:54] pci_passthrough.reservation - PCI devices reserved [pci_ids=0000:01:00.0 vm_id=100]

PCI_PASSTHROUGH_LOG_LEVEL (e.g. "DEBUG") sets the library level at import.
"""

import logging
import os

import click

LIBRARY_LOGGER_NAME: str = "pci_passthrough"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = os.environ.get("PCI_PASSTHROUGH_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:  # excludes NOTSET (0) and missing keys (None)
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _render_value(value: object) -> str:
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(str(item) for item in value)
    return str(value)


class ContextFormatter(logging.Formatter):
    """Standard line plus the record's ``extra`` fields as sorted key=value pairs.

    Fields whose value is None are left out.
    """

    def __init__(self) -> None:
        super().__init__(fmt=_FMT, datefmt=_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_") and value is not None
        }
        if not fields:
            return line
        rendered = " ".join(f"{key}={_render_value(fields[key])}" for key in sorted(fields))
        return f"{line} [{rendered}]"


class _LauncherHandler(logging.Handler):
    """Writes formatted records to stderr via click.echo.

    Warnings and errors are yellow; click strips the color when stderr is
    not a TTY.
    """

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(ContextFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if record.levelno >= logging.WARNING:
                msg = click.style(msg, fg="yellow")
            click.echo(msg, err=True)
        except Exception:  # noqa: BLE001
            self.handleError(record)


def get_logger(name: str) -> logging.Logger:
    """Logger for a pci_passthrough module (pass ``__name__``)."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Enable stderr output for a launcher process.

    Adds the launcher handler once (repeated calls only change the level).
    Applications that install their own handlers need not call this.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"). Overrides the env var.
        quiet: Only errors. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _LauncherHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_LauncherHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
