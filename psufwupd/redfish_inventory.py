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
PSU inventory backend over the BMC Redfish API.

Each member of /redfish/v1/Chassis/<chassis>/PowerSubsystem/PowerSupplies is
exposed as the inventory path <PSU_INVENTORY_PATH_BASE>/<chassis>/<member id>.
"""

import logging
from typing import Any, Dict, List, Optional

import requests
import urllib3

from psufwupd.constants import (
    ASSET_IFACE,
    ITEM_IFACE,
    MANUFACTURER,
    MODEL,
    PRESENT,
    PSU_INVENTORY_IFACE,
    PSU_INVENTORY_PATH_BASE,
    VERSION,
)
from psufwupd.errors import InventoryError

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

REDFISH_SERVICE = "redfish"

_SUPPORTED_INTERFACES = (ITEM_IFACE, PSU_INVENTORY_IFACE, ASSET_IFACE)


class RedfishInventory:
    """Read PSU presence, model, manufacturer and firmware version from a BMC."""

    def __init__(self, inventory_config: Dict[str, Any], logger: logging.Logger = None):
        """
        Args:
            inventory_config (Dict[str, Any]): The inventory section of the configuration
                (protocol, ip, port, username, password, chassis, request_timeout)
            logger (logging.Logger): Logger instance
        """
        self.config = inventory_config
        self.chassis = inventory_config.get("chassis", "chassis")
        self.request_timeout = inventory_config.get("request_timeout", 30)
        self.logger = logger or logging.getLogger(__name__)
        self.session: Optional[requests.Session] = None

    def get_session(self) -> requests.Session:
        """
        Get or create BMC session.

        Returns:
            requests.Session configured for BMC communication
        """
        if self.session is None:
            self.session = requests.Session()
            self.session.verify = False
            self.session.auth = (
                self.config.get("username", ""),
                self.config.get("password", ""),
            )
        return self.session

    def get_base_url(self) -> str:
        protocol = self.config.get("protocol", "https")
        ip = self.config.get("ip", "")
        port = self.config.get("port", 443)
        return f"{protocol}://{ip}:{port}"

    @property
    def collection_uri(self) -> str:
        return f"/redfish/v1/Chassis/{self.chassis}/PowerSubsystem/PowerSupplies"

    def get_json(self, uri: str) -> Dict[str, Any]:
        """
        Send a GET request and decode the JSON body.

        Raises:
            InventoryError: On connection errors, timeouts, non 200 status or invalid JSON
        """
        url = f"{self.get_base_url()}{uri}"
        self.logger.debug(f"BMC Redfish GET Request: {url}")
        try:
            response = self.get_session().get(url, timeout=self.request_timeout)
        except requests.exceptions.Timeout as e:
            raise InventoryError(f"BMC Redfish GET Timeout: {url}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise InventoryError(f"BMC Redfish GET Exception: {url}: {e}") from e

        if response.status_code != 200:
            raise InventoryError(f"BMC Redfish GET {url} returned {response.status_code}: {response.text}")
        try:
            return response.json()
        except ValueError as e:
            raise InventoryError(f"BMC Redfish GET {url} returned invalid JSON: {e}") from e

    def path_to_uri(self, psu_path: str) -> str:
        prefix = f"{PSU_INVENTORY_PATH_BASE}/{self.chassis}/"
        if not psu_path.startswith(prefix) or "/" in psu_path[len(prefix) :]:
            raise InventoryError(f"Unknown PSU inventory path: {psu_path}")
        return f"{self.collection_uri}/{psu_path[len(prefix):]}"

    def get_psu_inventory_paths(self) -> List[str]:
        collection = self.get_json(self.collection_uri)
        paths = []
        for member in collection.get("Members", []):
            odata_id = member.get("@odata.id", "")
            member_id = odata_id.rstrip("/").rpartition("/")[2]
            if member_id:
                paths.append(f"{PSU_INVENTORY_PATH_BASE}/{self.chassis}/{member_id}")
        return paths

    def get_service(self, path: str, interface: str) -> str:
        if interface not in _SUPPORTED_INTERFACES:
            raise InventoryError(f"No service provides {interface} on {path}")
        self.path_to_uri(path)
        return REDFISH_SERVICE

    def get_psu_properties(self, psu_path: str) -> Dict[str, Any]:
        """
        Read the inventory properties of one PSU.

        Returns:
            Dict[str, Any]: Present, Model, Manufacturer and Version
        """
        resource = self.get_json(self.path_to_uri(psu_path))
        state = (resource.get("Status") or {}).get("State", "")
        return {
            PRESENT: state != "Absent",
            MODEL: resource.get("Model") or "",
            MANUFACTURER: resource.get("Manufacturer") or "",
            VERSION: resource.get("FirmwareVersion") or "",
        }

    def get_property(self, service: str, path: str, interface: str, property_name: str) -> Any:
        if service != REDFISH_SERVICE:
            raise InventoryError(f"Unknown service {service}")
        properties = self.get_psu_properties(path)
        if property_name not in properties:
            raise InventoryError(f"Property {property_name} not found on {path} {interface}")
        return properties[property_name]
