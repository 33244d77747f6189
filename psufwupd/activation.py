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
Per-image activation state machine.

An Activation drives the install of one firmware image onto every present,
compatible PSU that is not already running it. PSUs are flashed one at a time:

    Ready/Failed/Active --request--> Activating --all done--> Active
                                         |
                                         +--any failure--> Failed

Progress starts at 10, grows by 80 / number-of-PSUs after each PSU and is set
to 100 once the last PSU is done. The progress and blocks-transition markers
only exist while Activating.
"""

import logging
from collections import deque
from enum import Enum
from typing import List, Optional

from psufwupd.associations import AssociationSet
from psufwupd.constants import (
    ACTIVATION_FWD_ASSOCIATION,
    ACTIVATION_REV_ASSOCIATION,
    ASSET_IFACE,
    ITEM_IFACE,
    MANUFACTURER,
    PRESENT,
    PROGRESS_DONE,
    PROGRESS_SPAN,
    PROGRESS_START,
    PSU_UPDATE_SERVICE,
)
from psufwupd.errors import PsuUpdaterError
from psufwupd.update_executor import JobResult, UpdateExecutor, get_update_service
from psufwupd.utils import PsuUtils
from psufwupd.version import Version


class ActivationStatus(Enum):
    """Activation states. NotReady and Invalid are never entered."""

    NOT_READY = "NotReady"
    INVALID = "Invalid"
    READY = "Ready"
    ACTIVATING = "Activating"
    ACTIVE = "Active"
    FAILED = "Failed"


class RequestedActivation(Enum):
    """Requested activation values."""

    NONE = "None"
    ACTIVE = "Active"


def compatible(psu_model: str, psu_manufacturer: str, image_model: str, image_manufacturer: str) -> bool:
    """
    Check if a PSU can take an image.

    The model must match. The manufacturer must match too, unless the PSU
    does not report one.
    """
    if psu_model != image_model:
        return False
    return not psu_manufacturer or psu_manufacturer == image_manufacturer


class ActivationProgress:
    """Progress marker, exists only while an activation runs."""

    def __init__(self, object_path: str):
        self.object_path = object_path
        self.progress = 0


class ActivationBlocksTransition:
    """Marker telling the BMC not to change power state while PSUs are flashed."""

    def __init__(self, object_path: str):
        self.object_path = object_path


class Activation:
    """Drives the install of one firmware image across the PSUs."""

    Status = ActivationStatus

    def __init__(
        self,
        version: Version,
        status: ActivationStatus,
        associations: Optional[AssociationSet] = None,
        *,
        utils: PsuUtils,
        executor: UpdateExecutor,
        association_interface=None,
        activation_listener=None,
        image_store=None,
        update_service_template: str = PSU_UPDATE_SERVICE,
        logger: logging.Logger = None,
    ):
        """
        Args:
            version (Version): The image this activation installs, shares its version id
            status (ActivationStatus): Initial state
            associations (AssociationSet): PSUs already running this image
            utils (PsuUtils): Inventory and tool collaborator
            executor (UpdateExecutor): Starts the flashing jobs
            association_interface: Receives the active/functional/updateable associations
            activation_listener: Notified after each PSU is updated
            image_store: Stores the image and removes the uploaded copy when done
            update_service_template (str): Flashing unit template
            logger (logging.Logger): Logger instance
        """
        self.version = version
        self.associations = associations if associations is not None else AssociationSet()
        self.utils = utils
        self.executor = executor
        self.association_interface = association_interface
        self.activation_listener = activation_listener
        self.image_store = image_store
        self.update_service_template = update_service_template
        self.logger = logger or logging.getLogger(__name__)

        self._status = status
        self._requested = RequestedActivation.NONE
        self._psu_queue: deque = deque()
        self._progress = 0
        self._progress_step = 0
        self._current_updating_psu = ""
        self._psu_update_unit = ""
        self.should_activate_again = False
        self.activation_progress: Optional[ActivationProgress] = None
        self.activation_blocks_transition: Optional[ActivationBlocksTransition] = None

    # Identity and image metadata

    @property
    def version_id(self) -> str:
        return self.version.version_id

    @property
    def object_path(self) -> str:
        return self.version.object_path

    @property
    def path(self) -> str:
        return self.version.path

    @path.setter
    def path(self, value: str) -> None:
        self.version.path = value

    @property
    def ext_version(self) -> str:
        return self.version.ext_version

    @property
    def manufacturer(self) -> str:
        return self.version.ext_version_info.get("manufacturer", "")

    @property
    def model(self) -> str:
        return self.version.ext_version_info.get("model", "")

    # Observable state

    @property
    def status(self) -> ActivationStatus:
        return self._status

    @property
    def requested_activation(self) -> RequestedActivation:
        return self._requested

    @property
    def progress(self) -> int:
        """Last reported progress, reset when a new run starts."""
        return self._progress

    @property
    def progress_step(self) -> int:
        return self._progress_step

    @property
    def queue_length(self) -> int:
        return len(self._psu_queue)

    @property
    def queued_psus(self) -> List[str]:
        return list(self._psu_queue)

    @property
    def current_updating_psu(self) -> str:
        return self._current_updating_psu

    @property
    def psu_update_unit(self) -> str:
        return self._psu_update_unit

    # State transitions

    def set_activation(self, value: ActivationStatus) -> ActivationStatus:
        """
        Set the activation state.

        Setting Activating starts a run and the resulting state is whatever
        the run start decided. Any other state drops the transient markers.
        """
        if value == ActivationStatus.ACTIVATING:
            value = self.start_activation()
        else:
            self.activation_blocks_transition = None
            self.activation_progress = None
        self._status = value
        return value

    def set_requested_activation(self, value: RequestedActivation) -> RequestedActivation:
        """
        Request an activation.

        A request while a run is in progress does not restart it; the run
        is re-requested once it finishes successfully.
        """
        if value == RequestedActivation.ACTIVE:
            if self._status == ActivationStatus.ACTIVATING:
                self.logger.info(f"Activation of {self.version_id} requested while in progress, will run again")
                self.should_activate_again = True
                self._requested = value
                return self._requested
            if self._requested != RequestedActivation.ACTIVE and self._status in (
                ActivationStatus.READY,
                ActivationStatus.FAILED,
                ActivationStatus.ACTIVE,
            ):
                self._requested = value
                self.set_activation(ActivationStatus.ACTIVATING)
                if self._status != ActivationStatus.ACTIVATING:
                    # Nothing was started, accept future requests
                    self._requested = RequestedActivation.NONE
                return self._requested
        self._requested = value
        return self._requested

    def start_activation(self) -> ActivationStatus:
        """
        Build the PSU queue and dispatch the first update.

        Returns:
            ActivationStatus: Activating if a job was started, Failed if there is no
            PSU inventory or the first job could not start, otherwise the current state
        """
        previous = self._status
        if not self.path:
            self.logger.warning(f"No image for the activation {self.version_id}, skipped")
            return previous

        try:
            psu_paths = self.utils.get_psu_inventory_paths()
        except PsuUpdaterError as e:
            self.logger.error(f"Failed to get PSU inventory paths: {e}")
            psu_paths = []
        if not psu_paths:
            self.logger.warning("No PSU inventory found")
            return ActivationStatus.FAILED

        self._psu_queue.clear()
        for psu_path in psu_paths:
            if not self.is_present(psu_path):
                continue
            if not self.is_compatible(psu_path):
                self.logger.info(f"PSU {psu_path} is not compatible with {self.version_id}, skipped")
                continue
            if self.associations.is_associated(psu_path):
                self.logger.info(f"PSU {psu_path} is already running the image {self.version_id}, skipped")
                continue
            self._psu_queue.append(psu_path)

        if not self._psu_queue:
            self.logger.warning(f"No PSU compatible with the software {self.version_id}")
            return previous

        self.activation_progress = ActivationProgress(self.object_path)
        self.activation_blocks_transition = ActivationBlocksTransition(self.object_path)

        # With 4 PSUs progress goes 10, 30, 50, 70, 90 and then 100
        self._progress_step = PROGRESS_SPAN // len(self._psu_queue)
        self._progress = 0
        self._set_progress(PROGRESS_START)

        if self.do_update():
            return ActivationStatus.ACTIVATING
        self.activation_progress = None
        self.activation_blocks_transition = None
        return ActivationStatus.FAILED

    def do_update(self) -> bool:
        """
        Update the PSU at the head of the queue, or finish if the queue is empty.

        Returns:
            bool: False if the job could not be started
        """
        if not self._psu_queue:
            self.finish_activation()
            return True
        return self.update_psu(self._psu_queue[0])

    def update_psu(self, psu_inventory_path: str) -> bool:
        """Start the flashing job for one PSU. A start failure fails the run."""
        self._current_updating_psu = psu_inventory_path
        try:
            self._psu_update_unit = get_update_service(psu_inventory_path, self.path, self.update_service_template)
            self.executor.start(self._psu_update_unit)
        except (PsuUpdaterError, ValueError) as e:
            self.logger.error(f"Error starting service for PSU {psu_inventory_path}: {e}")
            self.on_update_failed()
            return False
        self.logger.info(f"Updating PSU {psu_inventory_path} to {self.version_id} with {self._psu_update_unit}")
        return True

    def unit_state_change(self, unit: str, result: str) -> None:
        """Handle the completion of a flashing job. Jobs of other activations are ignored."""
        if self._status != ActivationStatus.ACTIVATING or not unit or unit != self._psu_update_unit:
            return
        self._psu_update_unit = ""
        if result == JobResult.DONE.value:
            self.on_update_done()
        elif result in (JobResult.FAILED.value, JobResult.DEPENDENCY.value):
            self.on_update_failed()
        else:
            self.logger.error(f"Unknown result {result} for job {unit}")
            self.on_update_failed()

    def on_update_done(self) -> None:
        psu_path = self._current_updating_psu
        self._set_progress(self._progress + self._progress_step)

        self.associations.add(ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION, psu_path)
        if self.activation_listener is not None:
            self.activation_listener.on_update_done(self.version_id, psu_path)
        self.logger.info(f"PSU {psu_path} updated to {self.version_id}")

        self._current_updating_psu = ""
        if self._psu_queue:
            self._psu_queue.popleft()
        self.do_update()

    def on_update_failed(self) -> None:
        failed = self._current_updating_psu or (self._psu_queue[0] if self._psu_queue else "")
        self.logger.error(f"Failed to update PSU {failed} to {self.version_id}")
        self._psu_queue.clear()
        self._current_updating_psu = ""
        self._psu_update_unit = ""
        self.set_activation(ActivationStatus.FAILED)
        self.set_requested_activation(RequestedActivation.NONE)
        self.should_activate_again = False

    def finish_activation(self) -> None:
        uploaded_path = self.path
        self.store_image()
        self._set_progress(PROGRESS_DONE)

        self.delete_image_manager_object(uploaded_path)

        if self.association_interface is not None:
            self.association_interface.create_active_association(self.object_path)
            self.association_interface.add_functional_association(self.object_path)
            self.association_interface.add_updateable_association(self.object_path)

        self.set_requested_activation(RequestedActivation.NONE)
        self.set_activation(ActivationStatus.ACTIVE)
        self.logger.info(f"Activation of {self.version_id} completed")

        if self.should_activate_again:
            self.should_activate_again = False
            self.set_requested_activation(RequestedActivation.ACTIVE)

    def _set_progress(self, value: int) -> None:
        self._progress = min(max(value, self._progress), PROGRESS_DONE)
        if self.activation_progress is not None:
            self.activation_progress.progress = self._progress

    # PSU checks

    def is_present(self, psu_inventory_path: str) -> bool:
        try:
            service = self.utils.get_service(psu_inventory_path, ITEM_IFACE)
            return bool(self.utils.get_property(service, psu_inventory_path, ITEM_IFACE, PRESENT))
        except PsuUpdaterError as e:
            self.logger.error(f"Failed to get present property of {psu_inventory_path}: {e}")
            return False

    def is_compatible(self, psu_inventory_path: str) -> bool:
        try:
            service = self.utils.get_service(psu_inventory_path, ASSET_IFACE)
            psu_manufacturer = self.utils.get_property(service, psu_inventory_path, ASSET_IFACE, MANUFACTURER)
        except PsuUpdaterError as e:
            self.logger.error(f"Failed to get manufacturer of {psu_inventory_path}: {e}")
            return False
        psu_model = self.utils.get_model(psu_inventory_path)
        return compatible(psu_model, psu_manufacturer or "", self.model, self.manufacturer)

    # Image handling

    def store_image(self) -> None:
        """Keep a copy of an uploaded image in the persisted directory."""
        if self.image_store is None:
            return
        try:
            stored = self.image_store.store_image(self.path, self.model)
        except OSError as e:
            self.logger.error(f"Error storing PSU image: src={self.path}, model={self.model}: {e}")
            return
        if stored:
            self.path = stored

    def delete_image_manager_object(self, uploaded_path: str) -> None:
        """Remove the uploaded image once it has been installed."""
        if self.image_store is None or not uploaded_path:
            return
        try:
            self.image_store.remove_uploaded_image(uploaded_path)
        except OSError as e:
            self.logger.error(f"Error deleting uploaded image {uploaded_path}: {e}")
