"""Set up logging for kernel discovery and kernel sessions."""

from __future__ import annotations

import logging
import logging.config
import sys
import textwrap
from pathlib import Path
from typing import TYPE_CHECKING

from prompt_toolkit.formatted_text.base import FormattedText
from prompt_toolkit.output.defaults import create_output
from prompt_toolkit.shortcuts.utils import print_formatted_text
from prompt_toolkit.styles.style import Style

from nbkernels.utils import dict_merge

if TYPE_CHECKING:
    from types import TracebackType
    from typing import Any, TextIO

    from prompt_toolkit.formatted_text.base import StyleAndTextTuples

    from nbkernels.config import Config

log = logging.getLogger(__name__)

_STDOUT_NAMES = {"-", "/dev/stdout"}

LOG_STYLE = Style.from_dict(
    {
        "log.date": "fg:ansiblue",
        "log.level.debug": "fg:ansigreen",
        "log.level.info": "fg:ansicyan",
        "log.level.warning": "fg:ansiyellow",
        "log.level.error": "fg:ansired",
        "log.level.critical": "fg:ansiwhite bg:ansired bold",
        "log.ref": "fg:ansibrightblack",
        "log.traceback": "fg:ansibrightblack",
    }
)

FILE_FORMAT = (
    "{asctime}.{msecs:03.0f} {levelname:<7} [{name}.{funcName}:{lineno}] {message}"
)


class BufferedLogs(logging.Handler):
    """Hold back a logger's records while in context, emitting them afterwards.

    Settings are loaded before logging is configured, so anything logged while
    loading them is buffered until the log handlers exist.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        """Buffer records sent to ``logger``, or to the root logger if omitted."""
        super().__init__()
        self.logger = logger or logging.getLogger()
        self.records: list[logging.LogRecord] = []
        self._saved: list[logging.Handler] = []

    def emit(self, record: logging.LogRecord) -> None:
        """Keep the record for later."""
        self.records.append(record)

    def __enter__(self) -> BufferedLogs:
        """Divert the logger's records into the buffer."""
        self._saved, self.logger.handlers = self.logger.handlers, [self]
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        """Put the logger's handlers back and pass them the buffered records."""
        self.logger.handlers = self._saved
        while self.records:
            self.logger.handle(self.records.pop(0))


class StdoutFormatter(logging.Formatter):
    """Lay out records as styled columns for a terminal."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        """Create a formatter showing times of day."""
        super().__init__(*args, **kwargs)
        self.datefmt = self.datefmt or "%H:%M:%S"
        self.last_date: str | None = None

    def ft_format(self, record: logging.LogRecord, width: int = 80) -> FormattedText:
        """Lay out a record as formatted text no wider than ``width``.

        The time is left blank when it is the same as that of the previous record,
        and the message is wrapped in a column following the level name.
        """
        record.message = record.getMessage()
        record.asctime = self.formatTime(record, self.datefmt)
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)

        date = record.asctime
        if date == self.last_date:
            date = " " * len(date)
        self.last_date = record.asctime

        indent = " " * (len(date) + 10)
        lines = textwrap.wrap(
            record.message, width=max(width - len(indent), 20), replace_whitespace=False
        ) or [""]

        level = record.levelname
        fragments: StyleAndTextTuples = [
            ("class:log.date", date),
            ("", " " * (9 - len(level))),
            (f"class:log.level.{level.lower()}", level),
            ("", f" {lines[0]} "),
            ("class:log.ref", f"{record.name}.{record.funcName}:{record.lineno}"),
        ]
        for line in lines[1:]:
            fragments += [("", "\n"), ("", indent + line)]
        if record.exc_text:
            traceback = textwrap.indent(record.exc_text, indent)
            fragments += [("", "\n"), ("class:log.traceback", traceback)]
        fragments.append(("", "\n"))
        return FormattedText(fragments)


class FormattedTextHandler(logging.StreamHandler):
    """Print records to a terminal with prompt_toolkit."""

    def __init__(self, stream: TextIO | None = None) -> None:
        """Write to ``stream``, or to the standard error if omitted."""
        super().__init__(stream)
        self.output = create_output(stdout=self.stream)

    def emit(self, record: logging.LogRecord) -> None:
        """Print a record, styled if it has a terminal formatter."""
        try:
            formatter = self.formatter
            if isinstance(formatter, StdoutFormatter):
                text = formatter.ft_format(record, self.output.get_size().columns)
            else:
                text = FormattedText([("", self.format(record) + "\n")])
            print_formatted_text(
                text,
                end="",
                style=LOG_STYLE,
                output=self.output,
                include_default_pygments_style=False,
            )
        except RecursionError:
            raise
        except Exception:
            self.handleError(record)


def handle_exception(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_traceback: TracebackType | None,
) -> None:
    """Record uncaught exceptions in the log.

    Keyboard interrupts are passed to Python's default hook.
    """
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
    else:
        log.critical(
            "Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback)
        )


def _handlers(config: Config | None) -> tuple[str, dict[str, Any]]:
    """Choose the logger level and the handlers for the given settings."""
    stdout: dict[str, Any] = {
        "()": FormattedTextHandler,
        "formatter": "terminal",
        "stream": sys.stdout,
        "level": "CRITICAL",
    }
    if config is None:
        return "WARNING", {"stdout": stdout}

    level = config.log_level.upper()
    handlers = {"stdout": stdout}
    log_file = config.log_file or ""
    if log_file in _STDOUT_NAMES:
        stdout["level"] = level
    else:
        stdout["level"] = config.log_level_stdout.upper()
        if log_file:
            handlers["file"] = {
                "class": "logging.FileHandler",
                "filename": Path(log_file).expanduser(),
                "formatter": "file",
                "level": level,
            }
    return level, handlers


def setup_logs(config: Config | None = None) -> None:
    """Configure the ``nbkernels`` logger from the logging settings.

    Records are printed to the standard output at the ``log_level_stdout`` level
    and written to ``log_file`` at the ``log_level`` level. If ``log_file`` is
    ``-`` the standard output uses ``log_level`` instead. The ``log_config``
    setting is merged into the resulting :py:func:`logging.config.dictConfig`
    configuration.
    """
    level, handlers = _handlers(config)
    settings: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "terminal": {"()": StdoutFormatter},
            "file": {
                "format": FILE_FORMAT,
                "style": "{",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": {
            "nbkernels": {
                "handlers": list(handlers),
                "level": level,
                "propagate": False,
            }
        },
    }
    if config is not None and config.log_config:
        dict_merge(settings, config.log_config)
    logging.config.dictConfig(settings)

    logging.captureWarnings(True)
    sys.excepthook = handle_exception
