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

import re
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from psufwupd.version import Version, VersionPurpose, get_version_id

# Mark all tests in this file as core tests
pytestmark = pytest.mark.core


class TestGetVersionId(unittest.TestCase):
    """Test cases for the version id derivation."""

    def test_empty_version(self):
        """Test empty version."""
        self.assertEqual("", get_version_id(""))

    def test_known_ids(self):
        """Test known ids."""
        self.assertEqual("d8e03b57", get_version_id("version0"))
        self.assertEqual("e4d45054", get_version_id("version1"))
        self.assertEqual("be0e872f", get_version_id("v1.99.10-19"))
        self.assertEqual("56252132", get_version_id("01120114"))

    def test_format_and_determinism(self):
        """Test format and determinism."""
        for version in ("a", "v2.3.4", "some longer version string with spaces"):
            version_id = get_version_id(version)
            self.assertRegex(version_id, re.compile(r"^[0-9a-f]{8}$"))
            self.assertEqual(version_id, get_version_id(version))


class TestVersionPurpose(unittest.TestCase):
    """Test cases for the purpose conversion."""

    def test_short_and_qualified_names(self):
        """Test short and qualified names."""
        self.assertEqual(VersionPurpose.PSU, VersionPurpose.from_string("PSU"))
        self.assertEqual(
            VersionPurpose.PSU,
            VersionPurpose.from_string("xyz.openbmc_project.Software.Version.VersionPurpose.PSU"),
        )
        self.assertEqual(VersionPurpose.BMC, VersionPurpose.from_string("BMC"))

    def test_unknown(self):
        """Test unknown purpose strings map to UNKNOWN."""
        self.assertEqual(VersionPurpose.UNKNOWN, VersionPurpose.from_string("Toaster"))
        self.assertEqual(VersionPurpose.UNKNOWN, VersionPurpose.from_string(""))


class TestVersion(unittest.TestCase):
    """Test cases for the Version record and manifest parsing."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.manifest = Path(self.temp_dir.name) / "MANIFEST"

    def test_get_ext_version_info(self):
        """Test get ext version info."""
        info = Version.get_ext_version_info("manufacturer=TESTMANUFACTURER,model=TESTMODEL")

        self.assertEqual({"manufacturer": "TESTMANUFACTURER", "model": "TESTMODEL"}, info)

    def test_get_ext_version_info_ignores_bad_tokens(self):
        """Test get ext version info ignores bad tokens."""
        info = Version.get_ext_version_info("model=M1,garbage,,key=a=b")

        self.assertEqual({"model": "M1", "key": "a=b"}, info)
        self.assertEqual({}, Version.get_ext_version_info(""))

    def test_get_values(self):
        """Test get values."""
        self.manifest.write_text(
            "purpose=xyz.openbmc_project.Software.Version.VersionPurpose.PSU\n"
            "version=01120114\n"
            "extended_version=model=dummy_model,manufacturer=dummy_manufacturer\n",
            encoding="utf-8",
        )

        values = Version.get_values(self.manifest, ["version", "extended_version", "missing"])

        self.assertEqual("01120114", values["version"])
        self.assertEqual("model=dummy_model,manufacturer=dummy_manufacturer", values["extended_version"])
        self.assertEqual("", values["missing"])
        self.assertEqual("01120114", Version.get_value(self.manifest, "version"))

    def test_get_values_missing_file(self):
        """Test get values missing file."""
        values = Version.get_values(self.manifest, ["version"])

        self.assertEqual({"version": ""}, values)

    def test_get_values_empty_path(self):
        """Test get values empty path."""
        with self.assertRaises(ValueError):
            Version.get_values("", ["version"])

    def test_delete_calls_erase_callback(self):
        """Test delete calls erase callback."""
        erase = MagicMock()
        version = Version("/xyz/openbmc_project/software/abc", "abc", "v1", erase_callback=erase)

        version.delete()

        erase.assert_called_once_with("abc")

    def test_ext_version_info_property(self):
        """Test ext version info property."""
        version = Version("/obj", "abc", "v1", ext_version="manufacturer=ACME,model=P1234")

        self.assertEqual("P1234", version.ext_version_info["model"])
        self.assertEqual(VersionPurpose.PSU, version.purpose)
