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
Turn inventory snapshots into PSU change events.

The Redfish inventory has no change notifications, so it is polled and
successive snapshots are compared.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from psufwupd.constants import ITEM_IFACE, MODEL, PRESENT, PSU_INVENTORY_IFACE
from psufwupd.errors import InventoryError
from psufwupd.events import ModelChanged, PresenceChanged, PsuInterfacesAdded

WAIT_FOR_PSU_TIMEOUT = 30
WAIT_FOR_PSU_INTERVAL = 3


class InventoryPoller:
    """
    Post PresenceChanged, ModelChanged and PsuInterfacesAdded events.

    Watched paths (registered through watch()) get property change events.
    Paths that show up in the inventory without being watched are reported
    once as PsuInterfacesAdded.
    """

    def __init__(self, inventory, post: Callable[[Any], None], logger: logging.Logger = None):
        """
        Args:
            inventory: Backend with get_psu_inventory_paths() and get_psu_properties(path)
            post: Callable queueing an event on the event loop
            logger (logging.Logger): Logger instance
        """
        self.inventory = inventory
        self.post = post
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._watched: Dict[str, Optional[Dict[str, Any]]] = {}
        self._announced = set()

    def watch(self, psu_path: str) -> None:
        """Start reporting changes of a PSU. The first poll only records its state."""
        with self._lock:
            self._watched.setdefault(psu_path, None)

    def watched_paths(self) -> List[str]:
        with self._lock:
            return list(self._watched)

    def poll(self) -> int:
        """
        Compare the inventory with the last snapshot and post the differences.

        Returns:
            int: Number of events posted
        """
        try:
            paths = self.inventory.get_psu_inventory_paths()
        except InventoryError as e:
            self.logger.warning(f"Unable to poll PSU inventory: {e}")
            return 0

        posted = 0
        for psu_path in paths:
            try:
                current = self.inventory.get_psu_properties(psu_path)
            except InventoryError as e:
                self.logger.warning(f"Unable to read PSU {psu_path}: {e}")
                continue
            with self._lock:
                watched = psu_path in self._watched
                previous = self._watched.get(psu_path)
                if watched:
                    self._watched[psu_path] = current
            if watched:
                posted += self._post_changes(psu_path, previous, current)
            elif psu_path not in self._announced:
                self._announced.add(psu_path)
                self.post(
                    PsuInterfacesAdded(
                        path=psu_path,
                        interfaces={PSU_INVENTORY_IFACE: {}, ITEM_IFACE: {PRESENT: current[PRESENT]}},
                    )
                )
                posted += 1
        return posted

    def _post_changes(self, psu_path: str, previous: Optional[Dict[str, Any]], current: Dict[str, Any]) -> int:
        if previous is None:
            return 0
        posted = 0
        if previous[PRESENT] != current[PRESENT]:
            self.logger.info(f"PSU {psu_path} present changed to {current[PRESENT]}")
            self.post(PresenceChanged(psu_path=psu_path, present=current[PRESENT]))
            posted += 1
        if previous[MODEL] != current[MODEL] and current[MODEL]:
            self.post(ModelChanged(psu_path=psu_path, model=current[MODEL]))
            posted += 1
        return posted


def wait_for_psu_paths(
    inventory,
    timeout: float = WAIT_FOR_PSU_TIMEOUT,
    interval: float = WAIT_FOR_PSU_INTERVAL,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    logger: logging.Logger = None,
) -> List[str]:
    """
    Wait for the PSU inventory paths to settle.

    The number of PSUs is not known, so polling continues until no new
    path has been found for timeout seconds.

    Returns:
        List[str]: The PSU paths found, in discovery order
    """
    logger = logger or logging.getLogger(__name__)
    found: List[str] = []
    deadline = clock() + timeout
    while clock() < deadline:
        try:
            paths = inventory.get_psu_inventory_paths()
        except InventoryError as e:
            logger.error(f"Unable to get PSU inventory paths: {e}")
            paths = []
        for path in paths:
            if path not in found:
                found.append(path)
                deadline = clock() + timeout
        sleep(interval)
    return found
