import logging
import os
from typing import Optional

from exprdiag.config import LoggingSettings

LOG_FORMAT = '%(asctime)s - %(module)-15s - %(levelname)s - %(message)s'


class SingleLineFormatter(logging.Formatter):
    """
    Formatter that indents continuation lines of multi-line messages so they align
    with the start of the message text. Report excerpts and tables stay readable in the log.
    """

    def format(self, record):
        original_message = super().format(record)

        # asctime + " - " + module(15) + " - " + levelname + " - "
        initial_indent = ' ' * (len(self.formatTime(record)) + 3 + 15 + 3 + len(record.levelname) + 3)

        return original_message.replace('\n', f'\n{initial_indent}')


def setup_logger(settings: Optional[LoggingSettings] = None) -> logging.Logger:
    """
    Attach file and (optionally) console handlers to the root logger.

    Args:
        settings (LoggingSettings): log directory, file name, level and console switch.
    """
    if settings is None:
        settings = LoggingSettings()

    os.makedirs(settings.log_dir, exist_ok=True)
    log_file_path = os.path.join(settings.log_dir, settings.log_filename)
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logger = logging.getLogger()
    logger.setLevel(level)

    formatter = SingleLineFormatter(LOG_FORMAT)

    file_handler = logging.FileHandler(log_file_path, mode='a', encoding='utf8')
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if settings.console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.info(f"Logger initialized and logging to {log_file_path}")
    return logger
