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
Inventory and version coordinator.

ItemUpdater discovers PSUs and firmware images, owns the Activation and
Version records keyed by version id, keeps the PSU presence/model table and
converges every present PSU onto the latest known image.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Set, Tuple

from psufwupd.activation import Activation, ActivationStatus, RequestedActivation
from psufwupd.associations import AssociationSet
from psufwupd.constants import (
    ACTIVATION_FWD_ASSOCIATION,
    ACTIVATION_REV_ASSOCIATION,
    ACTIVE_FWD_ASSOCIATION,
    ACTIVE_REV_ASSOCIATION,
    FILEPATH_IFACE,
    FUNCTIONAL_FWD_ASSOCIATION,
    FUNCTIONAL_REV_ASSOCIATION,
    ITEM_IFACE,
    MANIFEST_EXTENDED_VERSION,
    MANIFEST_FILE,
    MODEL,
    PRESENT,
    PSU_INVENTORY_IFACE,
    PSU_INVENTORY_PATH_BASE,
    PSU_UPDATE_SERVICE,
    PURPOSE,
    SOFTWARE_OBJPATH,
    UPDATEABLE_FWD_ASSOCIATION,
    UPDATEABLE_REV_ASSOCIATION,
    VERSION,
    VERSION_IFACE,
)
from psufwupd.errors import PsuUpdaterError
from psufwupd.events import (
    EventLoop,
    JobCompleted,
    ModelChanged,
    PresenceChanged,
    PsuInterfacesAdded,
    VersionDiscovered,
)
from psufwupd.image_store import ImageStore, ScanResult, ScanStatus
from psufwupd.update_executor import UpdateExecutor
from psufwupd.utils import PsuUtils, is_psu_present, poll_until
from psufwupd.version import Version, VersionPurpose

Properties = Mapping[str, Any]
InterfacesAdded = Mapping[str, Properties]


@dataclass
class PsuStatus:
    """Presence and model of one PSU inventory path."""

    present: bool = False
    model: str = ""


class ItemUpdater:
    """
    Owns the Activation/Version pairs and reacts to inventory and image events.

    Activations call back through the association interface
    (create_active_association, add_functional_association,
    add_updateable_association, remove_association) and the activation
    listener (on_update_done).
    """

    def __init__(
        self,
        utils: PsuUtils,
        executor: UpdateExecutor,
        *,
        image_store: Optional[ImageStore] = None,
        always_use_builtin_img_dir: bool = False,
        update_service_template: str = PSU_UPDATE_SERVICE,
        identity_timeout: float = 0,
        identity_interval: float = 1,
        inventory_watcher=None,
        sleep=time.sleep,
        logger: logging.Logger = None,
    ):
        """
        Args:
            utils (PsuUtils): Inventory and tool collaborator
            executor (UpdateExecutor): Starts the flashing jobs
            image_store (ImageStore): Image directory layout
            always_use_builtin_img_dir (bool): Only install images from the builtin directory
            update_service_template (str): Flashing unit template
            identity_timeout (float): Seconds to keep polling a newly present PSU for its model and version
            identity_interval (float): Seconds between two reads
            inventory_watcher: Object with a watch(path) method, told about every tracked PSU
            sleep: Sleep function used between reads
            logger (logging.Logger): Logger instance
        """
        self.utils = utils
        self.executor = executor
        self.image_store = image_store or ImageStore()
        self.always_use_builtin_img_dir = always_use_builtin_img_dir
        self.update_service_template = update_service_template
        self.identity_timeout = identity_timeout
        self.identity_interval = identity_interval
        self.inventory_watcher = inventory_watcher
        self._sleep = sleep
        self.logger = logger or logging.getLogger(__name__)

        self.activations: Dict[str, Activation] = {}
        self.versions: Dict[str, Version] = {}
        self.version_strings: Set[str] = set()
        self.psu_path_activation_map: Dict[str, str] = {}
        self.psu_status_map: Dict[str, PsuStatus] = {}
        self.associations = AssociationSet()
        self._psu_paths: Set[str] = set()

    def register(self, loop: EventLoop) -> None:
        """Subscribe the coordinator to the events it handles."""
        loop.register(PresenceChanged, lambda e: self.on_psu_inventory_changed(e.psu_path, {PRESENT: e.present}))
        loop.register(ModelChanged, lambda e: self.on_psu_inventory_changed(e.psu_path, {MODEL: e.model}))
        loop.register(PsuInterfacesAdded, lambda e: self.on_psu_interfaces_added(e.path, e.interfaces))
        loop.register(VersionDiscovered, lambda e: self.on_version_interfaces_added(e.path, e.interfaces))
        loop.register(JobCompleted, self.on_job_completed)

    # Image objects

    def on_version_interfaces_added(self, path: str, interfaces: InterfacesAdded) -> None:
        """
        Handle a firmware image object becoming visible.

        Only PSU images with a file path are processed. A new version gets a
        Ready activation associated with the inventory base path. A known
        version without an image gets the file path attached.
        """
        version_props = interfaces.get(VERSION_IFACE, {})
        purpose = VersionPurpose.from_string(version_props.get(PURPOSE, ""))
        version = version_props.get(VERSION, "")
        file_path = interfaces.get(FILEPATH_IFACE, {}).get("Path", "")

        if not file_path or purpose != VersionPurpose.PSU:
            return
        if self.always_use_builtin_img_dir and not self.image_store.is_builtin(file_path):
            return

        version_id = self.utils.get_version_id(version) if version else path.rpartition("/")[2]
        if not version_id:
            self.logger.error(f"No version id found in object path {path}")
            return

        if version_id in self.activations:
            existing = self.versions.get(version_id)
            if existing is not None and not existing.path:
                existing.path = file_path
                if not existing.ext_version:
                    existing.ext_version = Version.get_value(
                        Path(file_path) / MANIFEST_FILE, MANIFEST_EXTENDED_VERSION
                    )
            return

        ext_version = Version.get_value(Path(file_path) / MANIFEST_FILE, MANIFEST_EXTENDED_VERSION)
        version_obj = self.create_version_object(
            path, version_id, version, VersionPurpose.PSU, path=file_path, ext_version=ext_version
        )
        associations = AssociationSet(
            [(ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION, PSU_INVENTORY_PATH_BASE)]
        )
        self.create_activation_object(version_obj, ActivationStatus.READY, associations)
        self.logger.info(f"Found PSU image {version} ({version_id}) in {file_path}")

    def create_version_object(
        self,
        object_path: str,
        version_id: str,
        version_string: str,
        purpose: VersionPurpose = VersionPurpose.PSU,
        path: str = "",
        ext_version: str = "",
    ) -> Version:
        version = Version(
            object_path,
            version_id,
            version_string,
            purpose,
            path=path,
            ext_version=ext_version,
            erase_callback=self.erase,
        )
        self.versions[version_id] = version
        self.version_strings.add(version_string)
        return version

    def create_activation_object(
        self, version: Version, status: ActivationStatus, associations: Optional[AssociationSet] = None
    ) -> Activation:
        activation = Activation(
            version,
            status,
            associations,
            utils=self.utils,
            executor=self.executor,
            association_interface=self,
            activation_listener=self,
            image_store=self.image_store,
            update_service_template=self.update_service_template,
            logger=self.logger.getChild("activation"),
        )
        self.activations[version.version_id] = activation
        return activation

    def erase(self, version_id: str) -> None:
        """Remove the Version and Activation with the given id."""
        version = self.versions.pop(version_id, None)
        if version is None:
            self.logger.error(f"Failed to find version {version_id} in versions map, unable to remove")
        else:
            self.version_strings.discard(version.version)
            self.remove_association(version.object_path)

        if self.activations.pop(version_id, None) is None:
            self.logger.error(f"Failed to find version {version_id} in activations map, unable to remove")

        for psu_path in [p for p, v in self.psu_path_activation_map.items() if v == version_id]:
            del self.psu_path_activation_map[psu_path]

    def delete_all(self) -> None:
        """Erase every version that is neither active nor being activated."""
        for version_id, activation in list(self.activations.items()):
            if activation.status not in (ActivationStatus.ACTIVE, ActivationStatus.ACTIVATING):
                self.logger.info(f"Deleting PSU image {version_id}")
                self.erase(version_id)

    # PSU objects

    def create_psu_object(self, psu_inventory_path: str, psu_version: str) -> None:
        """Associate a PSU with the Activation of the version it runs, creating it if needed."""
        version_id = self.utils.get_version_id(psu_version)
        if not version_id:
            return
        object_path = f"{SOFTWARE_OBJPATH}/{version_id}"

        activation = self.activations.get(version_id)
        if activation is not None:
            if not activation.associations.contains(
                ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION, psu_inventory_path
            ):
                activation.associations.add(
                    ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION, psu_inventory_path
                )
            self.psu_path_activation_map[psu_inventory_path] = version_id
            return

        # A present PSU with a known version is already running it
        version = self.create_version_object(object_path, version_id, psu_version, VersionPurpose.PSU)
        associations = AssociationSet(
            [(ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION, psu_inventory_path)]
        )
        self.create_activation_object(version, ActivationStatus.ACTIVE, associations)
        self.psu_path_activation_map[psu_inventory_path] = version_id

        self.create_active_association(object_path)
        self.add_functional_association(object_path)
        self.add_updateable_association(object_path)

    def remove_psu_object(self, psu_inventory_path: str) -> None:
        """Drop the association of a PSU, erasing its Activation once nothing refers to it."""
        version_id = self.psu_path_activation_map.pop(psu_inventory_path, None)
        if version_id is None:
            self.logger.error(f"No Activation found for PSU {psu_inventory_path}")
            return
        activation = self.activations.get(version_id)
        if activation is None:
            return
        activation.associations.remove(psu_inventory_path)
        if len(activation.associations) == 0:
            self.erase(version_id)

    def add_psu_to_status_map(self, psu_path: str) -> None:
        if psu_path in self.psu_status_map:
            return
        self.psu_status_map[psu_path] = PsuStatus()
        if self.inventory_watcher is not None:
            self.inventory_watcher.watch(psu_path)

    def read_psu_identity(self, psu_path: str) -> Tuple[str, str]:
        """
        Read the model and version of a PSU.

        Properties of a newly present PSU can show up one by one, so the
        tools are polled for up to identity_timeout seconds.

        Returns:
            Tuple[str, str]: Model and version, empty if not available yet
        """
        found = {"model": "", "version": ""}

        def identity_known():
            found["model"] = found["model"] or self.utils.get_model(psu_path)
            found["version"] = found["version"] or self.utils.get_version(psu_path)
            return found["model"] and found["version"]

        poll_until(identity_known, self.identity_timeout, self.identity_interval, sleep=self._sleep)
        return found["model"], found["version"]

    def handle_psu_presence_changed(self, psu_path: str) -> None:
        status = self.psu_status_map.get(psu_path)
        if status is None:
            return
        if status.present:
            model, version = self.read_psu_identity(psu_path)
            status.model = model
            if version and psu_path not in self.psu_path_activation_map:
                self.create_psu_object(psu_path, version)
        else:
            status.model = ""
            if psu_path in self.psu_path_activation_map:
                self.remove_psu_object(psu_path)

    def on_psu_inventory_changed(self, psu_path: str, properties: Properties) -> None:
        """
        Handle Present and Model changes of a tracked PSU.

        A PSU that is present without a model is left as is until its model
        shows up in a later change.
        """
        status = self.psu_status_map.get(psu_path)
        if status is None:
            return

        handled = False
        if PRESENT in properties:
            status.present = bool(properties[PRESENT])
            self.handle_psu_presence_changed(psu_path)
            handled = True
        if MODEL in properties:
            status.model = (properties[MODEL] or "") if status.present else ""
            if status.present and status.model and psu_path not in self.psu_path_activation_map:
                version = self.utils.get_version(psu_path)
                if version:
                    self.create_psu_object(psu_path, version)
            handled = True

        if handled:
            # Check if there are new PSU images to update
            self.process_stored_image()
            self.sync_to_latest_image()

    def on_psu_interfaces_added(self, path: str, interfaces: InterfacesAdded) -> None:
        """
        Handle a new inventory object.

        The PSU interface and the Item interface may be added separately, so
        PSU paths are remembered until the Item interface with Present arrives.
        """
        if PSU_INVENTORY_IFACE in interfaces:
            self._psu_paths.add(path)

        if ITEM_IFACE not in interfaces or path not in self._psu_paths or path in self.psu_status_map:
            return
        item = interfaces[ITEM_IFACE]
        if PRESENT not in item:
            return

        self.add_psu_to_status_map(path)
        self.psu_status_map[path].present = bool(item[PRESENT])
        self.handle_psu_presence_changed(path)
        if self.psu_status_map[path].present:
            self.process_stored_image()
            self.sync_to_latest_image()

    def process_psu_image(self) -> None:
        """Register every PSU of the inventory and react to its current presence."""
        try:
            paths = self.utils.get_psu_inventory_paths()
        except PsuUpdaterError as e:
            # The information might not be available yet
            self.logger.warning(f"Unable to get PSU inventory paths: {e}")
            return

        for psu_path in paths:
            self.add_psu_to_status_map(psu_path)
            try:
                self.psu_status_map[psu_path].present = is_psu_present(self.utils, psu_path)
            except PsuUpdaterError as e:
                self.logger.warning(f"Unable to get present property of {psu_path}: {e}")
                continue
            self.handle_psu_presence_changed(psu_path)

    # Stored images

    def process_stored_image(self) -> None:
        """Scan the builtin and, unless builtin only, the persisted image directories."""
        for directory in self.image_store.scan_directories(self.always_use_builtin_img_dir):
            self.scan_directory(directory)

    def find_model_directory(self, directory) -> ScanResult:
        """Look for the subdirectory named after the model of the known PSUs."""
        model = next((s.model for s in self.psu_status_map.values() if s.model), "")
        return self.image_store.find_model_directory(directory, model)

    def scan_directory(self, directory) -> None:
        """
        Load the image stored for the PSU model in the directory.

        A new version gets a Ready activation without associations. A version
        already running on a PSU gets the image path attached.
        """
        result = self.find_model_directory(directory)
        if result.status == ScanStatus.NOT_FOUND:
            self.logger.warning(f"Unable to find PSU firmware in directory {directory}: {result.message}")
            return
        if result.status == ScanStatus.MALFORMED:
            self.logger.error(f"Unable to find PSU firmware in directory {directory}: {result.message}")
            return
        if not result.found:
            return

        manifest = self.image_store.read_manifest(result.path)
        if not manifest.found:
            self.logger.error(f"Unable to find PSU firmware in directory {directory}: {manifest.message}")
            return
        self.logger.info(f"Found PSU firmware image directory: {manifest.path}")

        version_id = self.utils.get_version_id(manifest.version)
        if not version_id:
            return
        model_dir = str(manifest.path)

        activation = self.activations.get(version_id)
        if activation is None:
            object_path = f"{SOFTWARE_OBJPATH}/{version_id}"
            version = self.create_version_object(
                object_path,
                version_id,
                manifest.version,
                VersionPurpose.PSU,
                path=model_dir,
                ext_version=manifest.ext_version,
            )
            self.create_activation_object(version, ActivationStatus.READY, AssociationSet())
        else:
            # A running PSU uses this version, make it installable
            activation.path = model_dir
            if not activation.ext_version:
                activation.version.ext_version = manifest.ext_version

    def get_fw_version_from_builtin_dir(self) -> str:
        for activation in self.activations.values():
            if self.image_store.is_builtin(activation.path):
                version = self.versions.get(activation.version_id)
                if version is not None:
                    return version.version
        return ""

    def get_latest_version_id(self) -> Optional[str]:
        """Map the latest known version string back to its version id."""
        if self.always_use_builtin_img_dir:
            latest = self.get_fw_version_from_builtin_dir()
        else:
            latest = self.utils.get_latest_version(self.version_strings)
        if not latest:
            return None

        for version_id, version in self.versions.items():
            if version.version == latest:
                return version_id
        self.logger.error(f"Unable to find versionId for latest version {latest}")
        return None

    def sync_to_latest_image(self) -> None:
        """Activate the latest image if a present PSU is not running it yet."""
        latest_version_id = self.get_latest_version_id()
        if latest_version_id is None:
            return
        activation = self.activations.get(latest_version_id)
        if activation is None:
            self.logger.error(f"Unable to find Activation for versionId {latest_version_id}")
            return
        if activation.status == ActivationStatus.FAILED:
            # A failed image needs a fresh request
            return

        for psu_path, status in self.psu_status_map.items():
            if status.present and not activation.associations.is_associated(psu_path):
                self.logger.info(f"Automatically update PSUs to versionId {latest_version_id}")
                self.invoke_activation(activation)
                break

    def invoke_activation(self, activation: Activation) -> None:
        activation.set_requested_activation(RequestedActivation.ACTIVE)

    def process_psu_image_and_sync_to_latest(self) -> None:
        self.process_psu_image()
        self.process_stored_image()
        self.sync_to_latest_image()

    def on_job_completed(self, event: JobCompleted) -> None:
        for activation in list(self.activations.values()):
            activation.unit_state_change(event.unit, event.result)

    # Activation listener

    def on_update_done(self, version_id: str, psu_inventory_path: str) -> None:
        """Move a freshly updated PSU over to the Activation it now runs."""
        for other_id, other in list(self.activations.items()):
            if other_id == version_id or not other.associations.is_associated(psu_inventory_path):
                continue
            other.associations.remove(psu_inventory_path)
            if len(other.associations) == 0:
                self.erase(other_id)

        if version_id not in self.activations:
            self.logger.error(f"Unable to find Activation for version ID {version_id}")
            return
        self.psu_path_activation_map[psu_inventory_path] = version_id

    # Association interface

    def create_active_association(self, path: str) -> None:
        self.associations.remove_role(ACTIVE_FWD_ASSOCIATION)
        self.associations.add(ACTIVE_FWD_ASSOCIATION, ACTIVE_REV_ASSOCIATION, path)

    def add_functional_association(self, path: str) -> None:
        if not self.associations.contains(FUNCTIONAL_FWD_ASSOCIATION, FUNCTIONAL_REV_ASSOCIATION, path):
            self.associations.add(FUNCTIONAL_FWD_ASSOCIATION, FUNCTIONAL_REV_ASSOCIATION, path)

    def add_updateable_association(self, path: str) -> None:
        if not self.associations.contains(UPDATEABLE_FWD_ASSOCIATION, UPDATEABLE_REV_ASSOCIATION, path):
            self.associations.add(UPDATEABLE_FWD_ASSOCIATION, UPDATEABLE_REV_ASSOCIATION, path)

    def remove_association(self, path: str) -> None:
        self.associations.remove(path)
