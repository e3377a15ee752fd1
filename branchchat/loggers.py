"""
Logger objects used throughout the package.

Loggers are passed explicitly to the objects that need them (stores,
managers, pipelines), so that the caller decides how errors are
reported. The following implementations are provided:

    ConsoleLogger: writes to the console through the standard
        `logging` module
    ExceptionConsoleLogger: as ConsoleLogger, but raises a
        RuntimeError when an error is logged
    LoglistLogger: collects the messages in a list (for tests and
        for reporting to a user interface)

Example:
    ```python
    logger = LoglistLogger()
    logger.warning("nothing to do")
    print(logger.get_logs())
    ```
"""

from abc import ABC, abstractmethod
import logging


class LoggerBase(ABC):
    """Interface of the logger objects."""

    @abstractmethod
    def info(self, msg: str) -> None:
        pass

    @abstractmethod
    def warning(self, msg: str) -> None:
        pass

    @abstractmethod
    def error(self, msg: str) -> None:
        pass

    def set_level(self, level: int) -> None:
        """Set the logging level. Ignored by default."""
        pass


class ConsoleLogger(LoggerBase):
    """Logs to the console via the standard logging module."""

    def __init__(
        self, name: str = "branchchat", level: int = logging.INFO
    ) -> None:
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter("%(levelname)s - %(message)s")
            )
            self.logger.addHandler(handler)
        self.logger.setLevel(level)

    def info(self, msg: str) -> None:
        self.logger.info(msg)

    def warning(self, msg: str) -> None:
        self.logger.warning(msg)

    def error(self, msg: str) -> None:
        self.logger.error(msg)

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)


class ExceptionConsoleLogger(ConsoleLogger):
    """A console logger that raises an exception on errors."""

    def error(self, msg: str) -> None:
        super().error(msg)
        raise RuntimeError(msg)


class LoglistLogger(LoggerBase):
    """Collects log messages in a list."""

    def __init__(self) -> None:
        self.logs: list[tuple[str, str]] = []

    def info(self, msg: str) -> None:
        self.logs.append(("INFO", msg))

    def warning(self, msg: str) -> None:
        self.logs.append(("WARNING", msg))

    def error(self, msg: str) -> None:
        self.logs.append(("ERROR", msg))

    def get_logs(self, level: str | None = None) -> list[str]:
        """Return the logged messages, optionally of one level only
        ('INFO', 'WARNING', 'ERROR')."""
        return [
            f"{lvl}: {msg}"
            for lvl, msg in self.logs
            if level is None or lvl == level.upper()
        ]

    def count_logs(self, level: str | None = None) -> int:
        return len(self.get_logs(level))

    def clear_logs(self) -> None:
        self.logs.clear()
