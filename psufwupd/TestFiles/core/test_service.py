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

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from psufwupd.activation import ActivationStatus
from psufwupd.config import UpdaterConfig
from psufwupd.service import PsuUpdaterService, build_parser, main
from psufwupd.TestFiles.test_mocks import FakeInventory, write_manifest

# Mark all tests in this file as core tests
pytestmark = pytest.mark.core

PSU_PURPOSE = "xyz.openbmc_project.Software.Version.VersionPurpose.PSU"


class TestPsuUpdaterService(unittest.TestCase):
    """Test cases for the service wiring."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        root = Path(self.temp_dir.name)
        self.upload_dir = root / "upload"
        self.config = UpdaterConfig(
            upload_dir=str(self.upload_dir),
            persist_dir=str(root / "persist"),
            builtin_dir=str(root / "builtin"),
            poll_interval=0.01,
        )
        self.service = PsuUpdaterService(self.config, inventory=FakeInventory())
        self.addCleanup(self.service.shutdown)

    def test_uploaded_image_becomes_ready(self):
        """Test uploaded image becomes ready."""
        write_manifest(self.upload_dir / "e4d45054", "version1", purpose=PSU_PURPOSE)

        self.service.start(wait_timeout=0)
        handled = self.service.run_once()

        self.assertEqual(1, handled)
        activation = self.service.item_updater.activations["e4d45054"]
        self.assertEqual(ActivationStatus.READY, activation.status)
        self.assertEqual(str(self.upload_dir / "e4d45054"), activation.path)
        self.assertFalse(self.service.is_activating())

    def test_known_images_are_not_reported_again(self):
        """Test known images are not reported again."""
        write_manifest(self.upload_dir / "e4d45054", "version1", purpose=PSU_PURPOSE)

        self.assertEqual(1, self.service.discover_uploaded_images())
        self.service.loop.run_until_idle()
        self.assertEqual(0, self.service.discover_uploaded_images())

    def test_stop(self):
        """Test run returns once stop has been requested."""
        self.service.stop()

        self.service.run()

        self.assertTrue(self.service.stop_event.is_set())

    def test_watch_polls_and_requests_upload_scan(self):
        """Test one watch round polls the inventory and queues an upload scan."""
        self.service.poller = MagicMock()
        self.service.poller.poll.side_effect = lambda: self.service.stop()

        self.service._watch()

        self.service.poller.poll.assert_called_once()
        self.assertEqual(1, self.service.loop.pending())


class TestCommandLine(unittest.TestCase):
    """Test cases for the command line entry point."""

    def test_parser(self):
        """Test command line options are parsed."""
        args = build_parser().parse_args(["-c", "config.yaml", "--once", "--console"])

        self.assertEqual("config.yaml", args.config)
        self.assertTrue(args.once)
        self.assertTrue(args.console)
        self.assertIsNone(args.log_dir)

    def test_missing_config(self):
        """Test missing config."""
        with tempfile.TemporaryDirectory() as temp_dir:
            with patch("sys.stderr"):
                result = main(["-c", os.path.join(temp_dir, "missing.yaml")])

        self.assertEqual(1, result)
