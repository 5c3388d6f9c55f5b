# chronokey/core/logging.py
import logging
import sys
from datetime import datetime

# Applied to loggers created after the call; see set_default_level()
_default_level: int = logging.INFO

_RESET = '\033[0m'
_TIME = '\033[94m'
_TEXT = '\033[97m'

_LEVEL_STYLE: dict[str, str] = {
    'DEBUG': '\033[90m',
    'INFO': '\033[92m',
    'WARNING': '\033[93m',
    'ERROR': '\033[91m',
    'CRITICAL': '\033[1;91m',
}


def _paint(style: str, text: str) -> str:
    return f'{style}{text}{_RESET}'


class ColoredFormatter(logging.Formatter):
    """One line per record: clock, component, level, message.

    The component is the last dotted segment of the logger name, so
    ``chronokey.listener`` shows as ``[listener]``.
    """

    component_width = 14
    level_width = 10

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        component = record.name.rpartition('.')[2]
        level_style = _LEVEL_STYLE.get(record.levelname, _TEXT)

        line = ' '.join(
            (
                _paint(_TIME, f'[{clock}]'),
                _paint(_TEXT, f'[{component}]'.ljust(self.component_width))
                + _paint(level_style, f'[{record.levelname}]'.ljust(self.level_width))
                + _paint(_TEXT, record.getMessage()),
            )
        )
        if record.exc_info:
            line = f'{line}\n{self.formatException(record.exc_info)}'
        return line


def set_default_level(level: int) -> None:
    """Change the level given to loggers that get_logger() has not built yet."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Return the ``chronokey.<component_name>`` logger, writing to stdout."""
    logger = logging.getLogger(f'chronokey.{component_name}')
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColoredFormatter())
    handler.setLevel(_default_level)
    logger.addHandler(handler)
    logger.setLevel(_default_level)
    logger.propagate = False
    return logger
