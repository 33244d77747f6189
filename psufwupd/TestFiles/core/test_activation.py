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

import unittest
from unittest.mock import MagicMock

import pytest

from psufwupd.activation import (
    Activation,
    ActivationStatus,
    RequestedActivation,
    compatible,
)
from psufwupd.associations import AssociationSet
from psufwupd.constants import ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION
from psufwupd.TestFiles.test_mocks import (
    IMAGE_EXT_VERSION,
    IMAGE_PATH,
    PSU0,
    PSU1,
    PSU2,
    PSU3,
    FakeExecutor,
    FakeUtils,
)
from psufwupd.update_executor import get_update_service
from psufwupd.version import Version

# Mark all tests in this file as core tests
pytestmark = pytest.mark.core

VERSION_ID = "abcdefgh"
OBJ_PATH = f"/xyz/openbmc_project/software/{VERSION_ID}"


class TestCompatible(unittest.TestCase):
    """Test cases for the compatibility predicate."""

    def test_same_model_and_manufacturer(self):
        """Test same model and manufacturer."""
        self.assertTrue(compatible("P1234", "ACME", "P1234", "ACME"))

    def test_empty_psu_manufacturer(self):
        """Test empty psu manufacturer."""
        self.assertTrue(compatible("P1234", "", "P1234", "ACME"))

    def test_model_mismatch(self):
        """Test model mismatch."""
        self.assertFalse(compatible("P9999", "ACME", "P1234", "ACME"))
        self.assertFalse(compatible("P9999", "", "P1234", "ACME"))

    def test_manufacturer_mismatch(self):
        """Test manufacturer mismatch."""
        self.assertFalse(compatible("P1234", "OTHER", "P1234", "ACME"))


class TestActivation(unittest.TestCase):
    """Test cases for the Activation state machine."""

    def setUp(self):
        self.utils = FakeUtils()
        self.executor = FakeExecutor()
        self.association_interface = MagicMock()
        self.listener = MagicMock()
        self.image_store = MagicMock()
        self.image_store.store_image.return_value = None
        self.version = Version(OBJ_PATH, VERSION_ID, "v2", path=IMAGE_PATH, ext_version=IMAGE_EXT_VERSION)
        self.activation = self.create_activation()

    def create_activation(self, status=ActivationStatus.READY, associations=None):
        return Activation(
            self.version,
            status,
            associations,
            utils=self.utils,
            executor=self.executor,
            association_interface=self.association_interface,
            activation_listener=self.listener,
            image_store=self.image_store,
        )

    def request(self):
        self.activation.set_requested_activation(RequestedActivation.ACTIVE)

    def complete(self, result="done"):
        self.activation.unit_state_change(self.executor.last_unit, result)

    def test_ctor(self):
        """Test a new activation starts ready with no progress or blocking object."""
        self.assertEqual(ActivationStatus.READY, self.activation.status)
        self.assertEqual(RequestedActivation.NONE, self.activation.requested_activation)
        self.assertEqual("ACME", self.activation.manufacturer)
        self.assertEqual("P1234", self.activation.model)
        self.assertEqual(IMAGE_PATH, self.activation.path)
        self.assertIsNone(self.activation.activation_progress)
        self.assertIsNone(self.activation.activation_blocks_transition)

    def test_no_psu_inventory_fails(self):
        """Test no psu inventory fails."""
        self.request()

        self.assertEqual(ActivationStatus.FAILED, self.activation.status)
        self.assertEqual(0, len(self.activation.associations))
        self.assertEqual([], self.executor.started)
        self.association_interface.create_active_association.assert_not_called()

    def test_inventory_error_fails(self):
        """Test inventory error fails."""
        self.utils.add_psu(PSU0)
        self.utils.inventory_error = True
        self.request()

        self.assertEqual(ActivationStatus.FAILED, self.activation.status)

    def test_no_file_path_keeps_status(self):
        """Test no file path keeps status."""
        self.version.path = ""
        self.utils.add_psu(PSU0)
        self.request()

        self.assertEqual(ActivationStatus.READY, self.activation.status)
        self.assertEqual(RequestedActivation.NONE, self.activation.requested_activation)
        self.assertEqual([], self.executor.started)

    def test_one_psu_update_done(self):
        """Test one psu update done."""
        self.utils.add_psu(PSU0)
        self.request()

        self.assertEqual(ActivationStatus.ACTIVATING, self.activation.status)
        self.assertEqual(10, self.activation.progress)
        self.assertIsNotNone(self.activation.activation_progress)
        self.assertIsNotNone(self.activation.activation_blocks_transition)
        self.assertEqual([get_update_service(PSU0, IMAGE_PATH)], self.executor.started)
        self.assertEqual(PSU0, self.activation.current_updating_psu)

        self.complete()

        self.assertEqual(ActivationStatus.ACTIVE, self.activation.status)
        self.assertEqual(100, self.activation.progress)
        self.assertEqual(RequestedActivation.NONE, self.activation.requested_activation)
        self.assertIsNone(self.activation.activation_progress)
        self.assertIsNone(self.activation.activation_blocks_transition)
        self.assertTrue(self.activation.associations.contains(ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION, PSU0))
        self.association_interface.create_active_association.assert_called_once_with(OBJ_PATH)
        self.association_interface.add_functional_association.assert_called_once_with(OBJ_PATH)
        self.association_interface.add_updateable_association.assert_called_once_with(OBJ_PATH)
        self.listener.on_update_done.assert_called_once_with(VERSION_ID, PSU0)

    def test_progress_with_four_psus(self):
        """Test progress with four psus."""
        for psu in (PSU0, PSU1, PSU2, PSU3):
            self.utils.add_psu(psu)
        self.request()

        self.assertEqual(4, self.activation.queue_length)
        self.assertEqual(20, self.activation.progress_step)
        self.assertEqual(10, self.activation.progress)
        for expected in (30, 50, 70):
            self.complete()
            self.assertEqual(ActivationStatus.ACTIVATING, self.activation.status)
            self.assertEqual(expected, self.activation.progress)
            self.assertEqual(expected, self.activation.activation_progress.progress)

        self.complete()
        self.assertEqual(ActivationStatus.ACTIVE, self.activation.status)
        self.assertEqual(100, self.activation.progress)
        self.assertEqual(4, len(self.executor.started))
        self.assertEqual(4, len(self.activation.associations))

    def test_progress_with_three_psus_ends_at_100(self):
        """Test progress with three psus ends at 100."""
        for psu in (PSU0, PSU1, PSU2):
            self.utils.add_psu(psu)
        self.request()

        self.assertEqual(10, self.activation.progress)
        self.complete()
        self.assertEqual(36, self.activation.progress)
        self.complete()
        self.assertEqual(62, self.activation.progress)
        self.complete()
        self.assertEqual(100, self.activation.progress)

    def test_psus_updated_one_at_a_time(self):
        """Test psus updated one at a time."""
        self.utils.add_psu(PSU0)
        self.utils.add_psu(PSU1)
        self.request()

        self.assertEqual(1, len(self.executor.started))
        self.complete()
        self.assertEqual(2, len(self.executor.started))
        self.assertEqual(get_update_service(PSU1, IMAGE_PATH), self.executor.last_unit)

    def test_failure_drops_remaining_psus(self):
        """Test failure drops remaining psus."""
        for psu in (PSU0, PSU1, PSU2):
            self.utils.add_psu(psu)
        self.request()
        self.complete()
        self.complete("failed")

        self.assertEqual(ActivationStatus.FAILED, self.activation.status)
        self.assertEqual(RequestedActivation.NONE, self.activation.requested_activation)
        self.assertEqual(0, self.activation.queue_length)
        self.assertEqual(2, len(self.executor.started))
        self.assertEqual([PSU0], self.activation.associations.paths())
        self.assertIsNone(self.activation.activation_progress)
        self.association_interface.create_active_association.assert_not_called()

    def test_dependency_failure(self):
        """Test dependency failure."""
        self.utils.add_psu(PSU0)
        self.request()
        self.complete("dependency")

        self.assertEqual(ActivationStatus.FAILED, self.activation.status)

    def test_start_failure_fails(self):
        """Test start failure fails."""
        self.utils.add_psu(PSU0)
        self.executor.fail_start = True
        self.request()

        self.assertEqual(ActivationStatus.FAILED, self.activation.status)
        self.assertEqual(RequestedActivation.NONE, self.activation.requested_activation)
        self.assertEqual(0, self.activation.queue_length)
        self.assertIsNone(self.activation.activation_blocks_transition)

    def test_failed_activation_can_be_requested_again(self):
        """Test failed activation can be requested again."""
        self.utils.add_psu(PSU0)
        self.request()
        self.complete("failed")
        self.request()

        self.assertEqual(ActivationStatus.ACTIVATING, self.activation.status)
        self.assertEqual(10, self.activation.progress)
        self.complete()
        self.assertEqual(ActivationStatus.ACTIVE, self.activation.status)

    def test_other_unit_ignored(self):
        """Test other unit ignored."""
        self.utils.add_psu(PSU0)
        self.request()
        self.activation.unit_state_change("psu-update@other.service", "done")

        self.assertEqual(ActivationStatus.ACTIVATING, self.activation.status)
        self.assertEqual(10, self.activation.progress)

    def test_not_present_psu_skipped(self):
        """Test not present psu skipped."""
        self.utils.add_psu(PSU0, present=False)
        self.utils.add_psu(PSU1)
        self.request()

        self.assertEqual([PSU1], self.activation.queued_psus)

    def test_unreachable_psu_skipped(self):
        """Test unreachable psu skipped."""
        self.utils.add_psu(PSU0)
        self.utils.add_psu(PSU1)
        self.utils.unreachable.add(PSU0)
        self.request()

        self.assertEqual([PSU1], self.activation.queued_psus)

    def test_incompatible_model_keeps_status(self):
        """Test incompatible model keeps status."""
        self.utils.add_psu(PSU0, model="P9999")
        self.request()

        self.assertEqual(ActivationStatus.READY, self.activation.status)
        self.assertEqual(RequestedActivation.NONE, self.activation.requested_activation)
        self.assertEqual([], self.executor.started)

    def test_incompatible_manufacturer_skipped(self):
        """Test incompatible manufacturer skipped."""
        self.utils.add_psu(PSU0, manufacturer="OTHER")
        self.utils.add_psu(PSU1)
        self.request()

        self.assertEqual([PSU1], self.activation.queued_psus)

    def test_empty_manufacturer_accepted(self):
        """Test empty manufacturer accepted."""
        self.utils.add_psu(PSU0, manufacturer="")
        self.request()

        self.assertEqual(ActivationStatus.ACTIVATING, self.activation.status)
        self.assertEqual([PSU0], self.activation.queued_psus)

    def test_associated_psu_skipped(self):
        """Test associated psu skipped."""
        self.utils.add_psu(PSU0)
        self.utils.add_psu(PSU1)
        self.activation.associations.add(ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION, PSU0)
        self.request()

        self.assertEqual([PSU1], self.activation.queued_psus)
        self.assertEqual(80, self.activation.progress_step)

    def test_nothing_to_do_keeps_active(self):
        """Test nothing to do keeps active."""
        self.utils.add_psu(PSU0)
        associations = AssociationSet([(ACTIVATION_FWD_ASSOCIATION, ACTIVATION_REV_ASSOCIATION, PSU0)])
        self.activation = self.create_activation(ActivationStatus.ACTIVE, associations)
        self.request()

        self.assertEqual(ActivationStatus.ACTIVE, self.activation.status)
        self.assertEqual([], self.executor.started)

    def test_request_while_activating_runs_again(self):
        """Test request while activating runs again."""
        self.utils.add_psu(PSU0)
        self.request()
        # A new PSU is plugged in while PSU0 is being updated
        self.utils.add_psu(PSU1)
        self.request()

        self.assertTrue(self.activation.should_activate_again)
        self.assertEqual([PSU0], self.activation.queued_psus)
        self.assertEqual(1, len(self.executor.started))

        self.complete()

        self.assertEqual(ActivationStatus.ACTIVATING, self.activation.status)
        self.assertFalse(self.activation.should_activate_again)
        self.assertEqual([PSU1], self.activation.queued_psus)
        self.assertEqual(10, self.activation.progress)

        self.complete()
        self.assertEqual(ActivationStatus.ACTIVE, self.activation.status)
        self.assertEqual([PSU0, PSU1], self.activation.associations.paths())

    def test_failure_clears_activate_again(self):
        """Test failure clears activate again."""
        self.utils.add_psu(PSU0)
        self.request()
        self.request()
        self.complete("failed")

        self.assertFalse(self.activation.should_activate_again)
        self.assertEqual(ActivationStatus.FAILED, self.activation.status)
        self.assertEqual(1, len(self.executor.started))

    def test_finish_stores_image_and_removes_upload(self):
        """Test finish stores image and removes upload."""
        self.utils.add_psu(PSU0)
        self.image_store.store_image.return_value = "/var/lib/obmc/psu/P1234"
        self.request()
        self.complete()

        self.image_store.store_image.assert_called_once_with(IMAGE_PATH, "P1234")
        self.image_store.remove_uploaded_image.assert_called_once_with(IMAGE_PATH)
        self.assertEqual("/var/lib/obmc/psu/P1234", self.activation.path)
        self.assertEqual("/var/lib/obmc/psu/P1234", self.version.path)

    def test_store_image_error_is_not_fatal(self):
        """Test store image error is not fatal."""
        self.utils.add_psu(PSU0)
        self.image_store.store_image.side_effect = OSError("disk full")
        self.request()
        self.complete()

        self.assertEqual(ActivationStatus.ACTIVE, self.activation.status)
        self.assertEqual(IMAGE_PATH, self.activation.path)

    def test_set_activation_other_than_activating(self):
        """Test set activation other than activating."""
        self.utils.add_psu(PSU0)
        self.request()
        self.activation.set_activation(ActivationStatus.READY)

        self.assertEqual(ActivationStatus.READY, self.activation.status)
        self.assertIsNone(self.activation.activation_progress)
        self.assertIsNone(self.activation.activation_blocks_transition)
