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
Collaborator interface used by the activation and the item updater.

PsuUtils is the capability set the orchestration code needs from the outside
world: PSU enumeration, property lookup, the vendor version/model tools and the
version comparison tool. ToolUtils is the production implementation, combining an
inventory backend with the vendor tools run as subprocesses.
"""

import logging
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, List, Sequence

from psufwupd.associations import Association, is_associated
from psufwupd.constants import ASSET_IFACE, ITEM_IFACE, MODEL, PRESENT, VERSION
from psufwupd.errors import InventoryError
from psufwupd.version import get_version_id


class PsuUtils(ABC):
    """Capability set injected into the activation and the item updater."""

    @abstractmethod
    def get_psu_inventory_paths(self) -> List[str]:
        """
        Get the PSU inventory paths.

        Raises:
            InventoryError: If the inventory can not be read
        """

    @abstractmethod
    def get_service(self, path: str, interface: str) -> str:
        """
        Get the name of the service hosting the interface on the path.

        Raises:
            InventoryError: If no service was found
        """

    @abstractmethod
    def get_property(self, service: str, path: str, interface: str, property_name: str) -> Any:
        """
        Get a property of an inventory object.

        Raises:
            InventoryError: If the property can not be read
        """

    @abstractmethod
    def get_version(self, inventory_path: str) -> str:
        """Get the running firmware version of a PSU, or an empty string."""

    @abstractmethod
    def get_model(self, inventory_path: str) -> str:
        """Get the model of a PSU, or an empty string."""

    @abstractmethod
    def get_latest_version(self, versions: Iterable[str]) -> str:
        """Get the latest version among the versions, or an empty string."""

    def get_version_id(self, version: str) -> str:
        return get_version_id(version)

    def is_associated(self, psu_inventory_path: str, associations: Iterable[Association]) -> bool:
        return is_associated(psu_inventory_path, associations)


class ToolUtils(PsuUtils):
    """
    Production collaborator.

    Inventory lookups are delegated to an inventory backend (see
    redfish_inventory.RedfishInventory). Version, model and comparison are
    answered by vendor tools. An empty tool command falls back to the
    inventory property.
    """

    def __init__(
        self,
        inventory,
        *,
        version_util: str = "",
        model_util: str = "",
        compare_util: str = "",
        tool_timeout: int = 30,
        logger: logging.Logger = None,
    ):
        """
        Args:
            inventory: Backend providing get_psu_inventory_paths, get_service and get_property
            version_util (str): Command printing the firmware version of a PSU
            model_util (str): Command printing the model of a PSU
            compare_util (str): Command printing the latest of the given versions
            tool_timeout (int): Maximum seconds for each tool invocation
            logger (logging.Logger): Logger instance
        """
        self.inventory = inventory
        self.version_util = version_util
        self.model_util = model_util
        self.compare_util = compare_util
        self.tool_timeout = tool_timeout
        self.logger = logger or logging.getLogger(__name__)

    def get_psu_inventory_paths(self) -> List[str]:
        return self.inventory.get_psu_inventory_paths()

    def get_service(self, path: str, interface: str) -> str:
        return self.inventory.get_service(path, interface)

    def get_property(self, service: str, path: str, interface: str, property_name: str) -> Any:
        return self.inventory.get_property(service, path, interface, property_name)

    def get_version(self, inventory_path: str) -> str:
        if self.version_util:
            return self._run_tool(self.version_util, [inventory_path])
        return self._get_inventory_string(inventory_path, ASSET_IFACE, VERSION)

    def get_model(self, inventory_path: str) -> str:
        if self.model_util:
            return self._run_tool(self.model_util, [inventory_path])
        return self._get_inventory_string(inventory_path, ASSET_IFACE, MODEL)

    def get_latest_version(self, versions: Iterable[str]) -> str:
        versions = sorted(set(versions))
        if not versions:
            return ""
        if len(versions) == 1:
            return versions[0]
        if not self.compare_util:
            self.logger.error("No version compare tool configured")
            return ""
        return self._run_tool(self.compare_util, versions)

    def _get_inventory_string(self, path: str, interface: str, property_name: str) -> str:
        try:
            service = self.get_service(path, interface)
            return str(self.get_property(service, path, interface, property_name) or "")
        except InventoryError as e:
            self.logger.error(f"Failed to get {property_name} of {path}: {e}")
            return ""

    def _run_tool(self, command: str, args: Sequence[str]) -> str:
        """
        Run a vendor tool and return its stripped output.

        Returns an empty string if the tool fails, times out or can not run.
        """
        cmd = shlex.split(command) + list(args)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.tool_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            self.logger.error(f"Tool {cmd[0]} timed out after {self.tool_timeout} seconds")
            return ""
        except OSError as e:
            self.logger.error(f"Failed to run {cmd[0]}: {e}")
            return ""
        if result.returncode != 0:
            self.logger.error(f"{' '.join(cmd)} returned {result.returncode}: {result.stderr.strip()}")
            return ""
        return result.stdout.strip()


def poll_until(
    func: Callable[[], Any],
    timeout: float,
    interval: float,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """
    Call func until it returns a truthy value or the timeout expires.

    func is always called at least once. The last result is returned,
    so a falsy value means the timeout was reached.
    """
    deadline = clock() + timeout
    result = func()
    while not result and clock() < deadline:
        sleep(interval)
        result = func()
    return result


def is_psu_present(utils: PsuUtils, psu_path: str) -> bool:
    """Read the Present property of a PSU. Raises InventoryError on failure."""
    service = utils.get_service(psu_path, ITEM_IFACE)
    return bool(utils.get_property(service, psu_path, ITEM_IFACE, PRESENT))
