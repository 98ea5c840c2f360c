"""Per-connection logging: lifecycle logger + raw wire frame writer."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import IO

OUTGOING = ">>"
INCOMING = "<<"


class WireLog:
    """Manages the log files of one agent connection.

    Provides:
    - logger: Python Logger for connect/disconnect events (-> session.log)
    - write(): appends every raw frame sent or received (-> wire.log)
    """

    def __init__(self, log_dir: Path, name: str) -> None:
        self._log_dir = log_dir
        self._name = name
        self._wire_file: IO[str] | None = None
        self._handler: logging.FileHandler | None = None
        self._logger: logging.Logger | None = None

        self._log_dir.mkdir(parents=True, exist_ok=True)

    @property
    def log_dir(self) -> Path:
        return self._log_dir

    @property
    def wire_path(self) -> Path:
        return self._log_dir / "wire.log"

    def start(self) -> None:
        """Open file handles and attach the per-connection Python logger."""
        self._logger = logging.getLogger(f"piremote.connection.{self._name}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        self._handler = logging.FileHandler(
            self._log_dir / "session.log", encoding="utf-8",
        )
        self._handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s: %(message)s"),
        )
        self._logger.addHandler(self._handler)

        # Append mode so reconnects to the same port share one file
        self._wire_file = open(self.wire_path, "a", encoding="utf-8")

    @property
    def logger(self) -> logging.Logger:
        if self._logger is None:
            raise RuntimeError("WireLog not started")
        return self._logger

    def write(self, direction: str, line: str) -> None:
        """Append one frame, tagged with its direction and a timestamp."""
        if self._wire_file and not self._wire_file.closed:
            stamp = datetime.now().isoformat(timespec="milliseconds")
            self._wire_file.write(f"{stamp} {direction} {line.rstrip()}\n")
            self._wire_file.flush()

    def close(self) -> None:
        """Close all file handles. Safe to call multiple times."""
        if self._wire_file and not self._wire_file.closed:
            self._wire_file.close()
            self._wire_file = None

        if self._handler and self._logger:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
