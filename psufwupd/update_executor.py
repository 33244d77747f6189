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
Flashing job naming and execution.

The actual flashing is done by an external systemd unit. This module derives
the unit name for a (PSU, image) pair, starts the unit, and reports the job
result back as a JobCompleted event.
"""

import logging
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional

from psufwupd.constants import PSU_UPDATE_SERVICE
from psufwupd.errors import UpdateStartError
from psufwupd.events import JobCompleted


class JobResult(Enum):
    """Completion results of a flashing job."""

    DONE = "done"
    FAILED = "failed"
    DEPENDENCY = "dependency"


def get_update_service(psu_inventory_path: str, image_path: str, template: str = PSU_UPDATE_SERVICE) -> str:
    """
    Get the flashing unit name for a PSU and an image.

    The two arguments are joined with an escaped space and every '/' is
    replaced by '-', then inserted right after the '@' of the template.

    Args:
        psu_inventory_path (str): The PSU inventory path, e.g. /com/example/inventory/powersupply1
        image_path (str): The image directory, e.g. /tmp/images/12345678
        template (str): The unit template, e.g. psu-update@.service

    Returns:
        str: e.g. psu-update@-com-example-inventory-powersupply1\\x20-tmp-images-12345678.service

    Raises:
        ValueError: If the template has no '@'
    """
    pos = template.find("@")
    if pos < 0:
        raise ValueError(f"Invalid update service template: {template}")
    args = f"{psu_inventory_path}\\x20{image_path}".replace("/", "-")
    return template[: pos + 1] + args + template[pos + 1 :]


class UpdateExecutor(ABC):
    """Starts flashing jobs. Results are delivered as JobCompleted events."""

    @abstractmethod
    def start(self, unit: str) -> None:
        """
        Start the flashing job.

        Raises:
            UpdateStartError: If the job could not be started
        """

    def shutdown(self, wait: bool = True) -> None:
        """Release resources held by the executor."""


def job_result_from_systemd(returncode: int, stderr: str = "") -> JobResult:
    """Map the outcome of 'systemctl start' to a job result."""
    if returncode == 0:
        return JobResult.DONE
    if "dependency" in (stderr or "").lower():
        return JobResult.DEPENDENCY
    return JobResult.FAILED


class SystemdUpdateExecutor(UpdateExecutor):
    """
    Run flashing units through systemctl.

    'systemctl start' blocks until the job finishes, so it runs on a single
    worker thread and the result is posted back to the event loop.
    """

    def __init__(
        self,
        post: Callable[[JobCompleted], None],
        *,
        job_timeout: int = 1800,
        systemctl: str = "systemctl",
        logger: logging.Logger = None,
    ):
        """
        Args:
            post: Callable that queues a JobCompleted event on the event loop
            job_timeout (int): Maximum seconds to wait for a flashing job
            systemctl (str): The systemctl executable
            logger (logging.Logger): Logger instance
        """
        self.post = post
        self.job_timeout = job_timeout
        self.systemctl = systemctl
        self.logger = logger or logging.getLogger(__name__)
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="psu-update")
        self._lock = threading.Lock()
        self._running: Optional[str] = None

    @property
    def running_unit(self) -> Optional[str]:
        """The unit of the job in flight, None once its result has been posted."""
        with self._lock:
            return self._running

    def start(self, unit: str) -> None:
        if shutil.which(self.systemctl) is None:
            raise UpdateStartError(f"{self.systemctl} not found, unable to start {unit}")
        with self._lock:
            if self._running is not None:
                raise UpdateStartError(f"Another flashing job is still running, unable to start {unit}")
            self._running = unit
        self.logger.info(f"Starting flashing job {unit}")
        try:
            self._pool.submit(self._run, unit)
        except RuntimeError as e:
            with self._lock:
                self._running = None
            raise UpdateStartError(f"Unable to start {unit}: {e}") from e

    def _run(self, unit: str) -> None:
        result = JobResult.FAILED
        try:
            completed = subprocess.run(
                [self.systemctl, "start", unit],
                capture_output=True,
                text=True,
                timeout=self.job_timeout,
                check=False,
            )
            result = job_result_from_systemd(completed.returncode, completed.stderr)
            if result != JobResult.DONE:
                self.logger.error(f"Flashing job {unit} returned {completed.returncode}: {completed.stderr.strip()}")
        except subprocess.TimeoutExpired:
            self.logger.error(f"Flashing job {unit} timed out after {self.job_timeout} seconds")
        except OSError as e:
            self.logger.error(f"Flashing job {unit} could not run: {e}")
        # The next job may be started from the handler of this event
        with self._lock:
            self._running = None
        self.post(JobCompleted(unit=unit, result=result.value))

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
