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
Single-threaded event loop for the PSU firmware updater.

Hardware and job notifications arrive from other threads (inventory poller,
flashing job workers) and are posted here. All state changes happen on the
thread that drains the queue, one handler at a time.
"""

import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass(frozen=True)
class PresenceChanged:
    """A PSU's Present property changed."""

    psu_path: str
    present: bool


@dataclass(frozen=True)
class ModelChanged:
    """A PSU's Model property changed."""

    psu_path: str
    model: str


@dataclass(frozen=True)
class PsuInterfacesAdded:
    """A new inventory object appeared with the given interfaces and properties."""

    path: str
    interfaces: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class VersionDiscovered:
    """A firmware image object became visible."""

    path: str
    interfaces: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class UploadScanRequested:
    """Time to look for new images in the upload directory."""


@dataclass(frozen=True)
class JobCompleted:
    """A flashing job finished. result is one of done, failed, dependency."""

    unit: str
    result: str


class EventLoop:
    """
    Queue of typed events with per-type handlers.

    post() may be called from any thread. Handlers only run on the
    thread calling run_once(), run_until_idle() or run().
    """

    def __init__(self, logger: logging.Logger = None):
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._handlers: Dict[type, List[Callable[[Any], None]]] = defaultdict(list)
        self.logger = logger or logging.getLogger(__name__)

    def register(self, event_type: type, handler: Callable[[Any], None]) -> None:
        self._handlers[event_type].append(handler)

    def post(self, event: Any) -> None:
        self._queue.put(event)

    def pending(self) -> int:
        return self._queue.qsize()

    def run_once(self, timeout: Optional[float] = None) -> bool:
        """
        Draw one event and run its handlers to completion.

        Args:
            timeout (Optional[float]): Seconds to wait for an event, None blocks

        Returns:
            bool: True if an event was processed
        """
        try:
            if timeout is not None and timeout <= 0:
                event = self._queue.get_nowait()
            else:
                event = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        self._dispatch(event)
        return True

    def run_until_idle(self) -> int:
        """Process events until the queue is empty. Returns the number processed."""
        count = 0
        while self.run_once(timeout=0):
            count += 1
        return count

    def run(self, stop_event: threading.Event, poll_timeout: float = 1.0) -> None:
        """Process events until stop_event is set."""
        while not stop_event.is_set():
            self.run_once(timeout=poll_timeout)

    def _dispatch(self, event: Any) -> None:
        handlers = self._handlers.get(type(event), [])
        if not handlers:
            self.logger.debug(f"No handler registered for {type(event).__name__}")
            return
        for handler in list(handlers):
            try:
                handler(event)
            except Exception as e:  # pylint: disable=broad-exception-caught
                self.logger.error(f"Unable to handle {type(event).__name__} event: {e}", exc_info=True)
