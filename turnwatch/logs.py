"""
Session logger: the single diagnostic sink used by every wait.

Messages always go to the stdlib `turnwatch` logger. Interactive output
(`echo`) and the persisted session sink (`session_log`) are optional.
Diagnostic dumps are only emitted when `verbose` is on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

_stdlib_logger = logging.getLogger("turnwatch")

LogSink = Callable[[str], None]


class FileSessionLog:
    """Append-only text sink for session diagnostics."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def __call__(self, message: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(message.rstrip("\n") + "\n")


class SessionLogger:
    """
    Callable logger with a verbosity gate and a separate persisted sink.

    Example:
        log = SessionLogger(verbose=True, session_log=FileSessionLog("run.log"), echo=print)
        log("Waiting for assistant response")
        log.diagnostic("[dom] last turn: ...")  # only when verbose
    """

    def __init__(
        self,
        *,
        verbose: bool = False,
        session_log: LogSink | None = None,
        echo: LogSink | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.verbose = verbose
        self.session_log = session_log
        self.echo = echo
        self._logger = logger or _stdlib_logger

    @classmethod
    def wrap(cls, sink: SessionLogger | LogSink | None, *, verbose: bool = False) -> SessionLogger:
        """Adapt a bare `fn(message)` (or None) to a SessionLogger."""
        if isinstance(sink, SessionLogger):
            return sink
        return cls(verbose=verbose, echo=sink)

    def __call__(self, message: str) -> None:
        self._logger.info(message)
        if self.echo is not None:
            self.echo(message)
        self._persist(message)

    def debug(self, message: str) -> None:
        self._logger.debug(message)
        if self.verbose:
            if self.echo is not None:
                self.echo(message)
            self._persist(message)

    def diagnostic(self, message: str) -> None:
        """Diagnostic dump line; dropped entirely unless verbose."""
        if not self.verbose:
            return
        self._logger.info(message)
        if self.echo is not None:
            self.echo(message)
        self._persist(message)

    def _persist(self, message: str) -> None:
        if self.session_log is None:
            return
        try:
            self.session_log(message)
        except OSError as e:
            self._logger.warning(f"session log write failed: {e}")
