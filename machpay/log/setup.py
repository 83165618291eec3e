import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import machpay.settings as default_settings


LOG_FORMAT = "%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s"


def setup_logging(console_level: int = logging.WARNING, log_file: Optional[Path] = None) -> None:
    """
    Configures the root logger for the CLI.
    Sets up a console handler and a rotating debug log file, clearing any
    previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param log_file: Where to write the DEBUG-level CLI log. Defaults to `CLI_LOG_PATH`.
    """
    log_file = log_file or default_settings.CLI_LOG_PATH

    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    # --- File Handler (always enabled for all levels) ---
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=default_settings.CLI_LOG_MAX_BYTES,
            backupCount=default_settings.CLI_LOG_BACKUP_COUNT,
            encoding='utf-8',
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.error(f"Failed to initialize file logging handler: {e}. Logging to file will be disabled.")

    # Keep urllib3 connection chatter out of the CLI log.
    logging.getLogger("urllib3").setLevel(logging.INFO)
