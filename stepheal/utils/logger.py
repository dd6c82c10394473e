"""
Logger utilities for the replay engine.

Modules log through get_logger(__name__). Records emitted while a step is
running carry that step's key (``%(step)s``), so a replay log can be read
step by step even when healing and tier attempts interleave.
"""

import contextvars
import logging
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, Iterator

CONSOLE_FORMAT = '%(asctime)s [%(step)s] %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s [%(step)s] %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
NO_STEP = '-'

# Third-party loggers that log every HTTP request at INFO
NOISY_LOGGERS = ('httpx', 'httpcore')

_current_step: contextvars.ContextVar = contextvars.ContextVar('stepheal_step', default=NO_STEP)


@contextmanager
def step_context(step_key: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``step_key``."""
    token = _current_step.set(step_key)
    try:
        yield
    finally:
        _current_step.reset(token)


def current_step() -> str:
    return _current_step.get()


class StepFilter(logging.Filter):
    """Adds the running step key to each record as ``record.step``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'step'):
            record.step = _current_step.get()
        return True


class ColoredFormatter(logging.Formatter):
    """Colors the level name; healing outcome glyphs are colored too."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    GLYPHS = {'✓': '\033[32m', '✗': '\033[31m'}
    RESET = '\033[0m'

    def format(self, record):
        # Copy, so file handlers sharing the record stay uncolored
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, '')
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        output = super().format(record)
        for glyph, glyph_color in self.GLYPHS.items():
            output = output.replace(glyph, f"{glyph_color}{glyph}{self.RESET}")
        return output


_logging_initialized = False


def setup_logging(
    level: str = 'INFO',
    log_dir: Optional[str] = None,
    colored: bool = True,
    log_file: Optional[str] = None,
    force: bool = False
) -> logging.Logger:
    """
    Configure the root logger for a replay run.

    The keyword names match LoggingConfig, so ``setup_logging(**asdict(cfg))``
    works; see stepheal.utils.config.configure_logging.

    Args:
        level: Console log level name
        log_dir: Directory for a per-run ``replay_<timestamp>.log`` file
        colored: Color the console output (ignored on Windows)
        log_file: Explicit log file path, overrides log_dir
        force: Reconfigure even if logging was already set up

    Returns:
        Root logger instance
    """
    global _logging_initialized

    root_logger = logging.getLogger()
    if _logging_initialized and not force:
        return root_logger

    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    root_logger.setLevel(min(numeric_level, logging.DEBUG) if (log_file or log_dir) else numeric_level)
    root_logger.handlers = []
    step_filter = StepFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    formatter_class = ColoredFormatter if colored and sys.platform != 'win32' else logging.Formatter
    console_handler.setFormatter(formatter_class(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    console_handler.addFilter(step_filter)
    root_logger.addHandler(console_handler)

    if log_file or log_dir:
        if log_file:
            file_path = Path(log_file)
        else:
            file_path = Path(log_dir) / f"replay_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        file_handler.addFilter(step_filter)
        root_logger.addHandler(file_handler)
        root_logger.info(f"Logging to file: {file_path}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    _logging_initialized = True
    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Logger for a module; pass ``__name__``."""
    return logging.getLogger(name)
