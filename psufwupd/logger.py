# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Logging utilities for the PSU firmware updater.

Every module logs through logging.getLogger(__name__). setup_logging()
attaches a file handler (and optionally a Rich console handler) to the
package logger, so all module loggers end up in the same run log.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class _LoggingState:
    """Internal class to encapsulate logging state without global variables."""

    def __init__(self):
        self.current_log_dir = None
        self.custom_log_dir = None
        self.lock = threading.Lock()


# Module-level instance to store logging state
_logging_state = _LoggingState()


def set_log_directory(log_dir_path: str) -> None:
    """
    Set a custom log directory path.
    This function should be called before any logging operations begin.

    Args:
        log_dir_path (str): Path to the custom log directory
    """
    with _logging_state.lock:
        _logging_state.custom_log_dir = Path(log_dir_path)
        # Reset current log dir to force recreation with new base
        _logging_state.current_log_dir = None


def get_log_directory() -> Path:
    """
    Get or create the log directory for the current run.

    Without a custom directory a timestamped directory is created under
    ./logs. This function is thread-safe.

    Returns:
        Path: Path to the current log directory
    """
    with _logging_state.lock:
        if _logging_state.current_log_dir is None:
            if _logging_state.custom_log_dir is not None:
                _logging_state.current_log_dir = _logging_state.custom_log_dir
            else:
                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                _logging_state.current_log_dir = Path("logs") / f"logs_{timestamp}"
            _logging_state.current_log_dir.mkdir(parents=True, exist_ok=True)

    return _logging_state.current_log_dir


def setup_logging(module_name: str = "psufwupd", console_output: bool = False, level: int = logging.INFO) -> logging.Logger:
    """
    Set up file-based logging for a logger, optionally with console output.

    Handlers are only added once per logger. This function is thread-safe.

    Args:
        module_name (str): Name of the logger, the package name covers every module
        console_output (bool): If True, add a Rich console handler
        level (int): Logging level of the logger and its handlers

    Returns:
        logging.Logger: Configured logger instance
    """
    log_dir = get_log_directory()
    logger = logging.getLogger(module_name)

    with _logging_state.lock:
        if not logger.handlers:
            logger.setLevel(level)

            log_file = log_dir / f"{module_name}.log"
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(file_handler)

            if console_output:
                console_handler = RichHandler(
                    console=Console(width=200),
                    rich_tracebacks=True,
                    show_time=True,
                    show_level=True,
                    show_path=False,
                    omit_repeated_times=False,
                    log_time_format="[%X]",
                )
                console_handler.setLevel(level)
                # RichHandler adds its own time and level
                console_handler.setFormatter(logging.Formatter("%(name)s - %(message)s"))
                logger.addHandler(console_handler)

            # Prevent propagation to root logger to avoid duplicate output
            logger.propagate = False

    return logger
