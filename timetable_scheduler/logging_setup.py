from __future__ import annotations

import logging
import sys
from pathlib import Path


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the console readable:
    - allow all timetable_scheduler logs
    - uvicorn access/error logs at their own level
    - any other third-party logger (sqlalchemy, passlib, httpx) only WARNING+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name.startswith("timetable_scheduler") or name == "__main__":
            return True

        if name.startswith("uvicorn"):
            return True

        # passlib checks the bcrypt backend version and logs the failure.
        if name.startswith("passlib"):
            return record.levelno >= logging.ERROR

        return record.levelno >= logging.WARNING


def setup_logging(
    *,
    level: str | int = logging.INFO,
    log_dir: str | Path | None = None,
    file_level: int = logging.DEBUG,
) -> None:
    """
    Configure the root logger with a filtered console handler and, when
    ``log_dir`` is given, a file handler receiving everything.

    Call this once, before the app starts serving.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter())
    root.addHandler(ch)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_dir / "timetable.log"), encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    logging.captureWarnings(True)
