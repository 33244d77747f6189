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
Version identity and firmware image metadata.

This module turns version strings into the short identifiers used as map keys
and object path suffixes, and reads the key=value manifest shipped with each
PSU image.
"""

import hashlib
import logging
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional, Union

logger = logging.getLogger(__name__)

VERSION_ID_LENGTH = 8


def get_version_id(version: str) -> str:
    """
    Calculate the version id from the version string.

    The id is the first 4 bytes of the SHA-512 digest rendered as
    8 lowercase hexadecimal digits.

    Args:
        version (str): The image version string (e.g. v1.99.10-19)

    Returns:
        str: The version id, or an empty string for an empty version
    """
    if not version:
        logger.error("Error version is empty")
        return ""
    digest = hashlib.sha512(version.encode("utf-8")).hexdigest()
    return digest[:VERSION_ID_LENGTH]


class VersionPurpose(Enum):
    """Purpose of a firmware image. Only PSU images are processed."""

    UNKNOWN = "Unknown"
    OTHER = "Other"
    SYSTEM = "System"
    BMC = "BMC"
    HOST = "Host"
    PSU = "PSU"

    @classmethod
    def from_string(cls, value: str) -> "VersionPurpose":
        """
        Convert a purpose string to a VersionPurpose.

        Accepts both the short form ("PSU") and the fully qualified
        form ("xyz.openbmc_project.Software.Version.VersionPurpose.PSU").
        """
        name = (value or "").rsplit(".", 1)[-1]
        for purpose in cls:
            if purpose.value == name:
                return purpose
        return cls.UNKNOWN


class Version:
    """
    Metadata record for one distinct firmware image.

    A Version lives exactly as long as the Activation with the same
    version id. Calling delete() asks the owner to erase both.
    """

    def __init__(
        self,
        object_path: str,
        version_id: str,
        version: str,
        purpose: VersionPurpose = VersionPurpose.PSU,
        path: str = "",
        ext_version: str = "",
        erase_callback: Optional[Callable[[str], None]] = None,
    ):
        self.object_path = object_path
        self.version_id = version_id
        self.version = version
        self.purpose = purpose
        self.path = path
        self.ext_version = ext_version
        self.erase_callback = erase_callback

    def delete(self) -> None:
        """Erase this version through the owner's callback."""
        if self.erase_callback:
            self.erase_callback(self.version_id)

    @property
    def ext_version_info(self) -> Dict[str, str]:
        return Version.get_ext_version_info(self.ext_version)

    @staticmethod
    def get_values(file_path: Union[str, Path], keys: Iterable[str]) -> Dict[str, str]:
        """
        Read a manifest file to get the values of the given keys.

        Each line of the manifest is "key=value". Keys which are not
        found are returned with an empty value.

        Args:
            file_path: The path to the manifest
            keys: The keys to look up

        Returns:
            Dict[str, str]: The keys with their values filled in

        Raises:
            ValueError: If file_path is empty
        """
        if not file_path:
            logger.error("Error filePath is empty")
            raise ValueError("FilePath is empty")

        values = {key: "" for key in keys}
        try:
            with open(file_path, encoding="utf-8") as f:
                for line in f:
                    line = line.rstrip("\r\n")
                    for key in values:
                        prefix = f"{key}="
                        if line.startswith(prefix):
                            values[key] = line[len(prefix) :]
                            break
        except OSError as e:
            logger.error(f"Error in reading file {file_path}: {e}")
        return values

    @staticmethod
    def get_value(file_path: Union[str, Path], key: str) -> str:
        """Read a single key from a manifest file."""
        return Version.get_values(file_path, [key])[key]

    @staticmethod
    def get_ext_version_info(ext_version: str) -> Dict[str, str]:
        """
        Parse the extended version into key/value pairs.

        The extended version is a comma separated list of key=value pairs,
        e.g. "manufacturer=ACME,model=P1234". Tokens without '=' are ignored.
        """
        result = {}
        for token in (ext_version or "").split(","):
            key, sep, value = token.partition("=")
            if sep:
                result.setdefault(key, value)
        return result
