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
Filesystem layout of PSU firmware images.

Layout:
    <builtin_dir>/<model>/MANIFEST   images shipped with the BMC firmware
    <persist_dir>/<model>/MANIFEST   last image successfully activated per model
    <upload_dir>/<id>/MANIFEST       images uploaded by the user

Scanning returns a ScanResult instead of raising, so a missing directory
(normal on systems that never stored an image) is told apart from a broken
one without exception handling at the call site.
"""

import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Union

from psufwupd.constants import (
    FILEPATH_IFACE,
    IMG_DIR,
    IMG_DIR_BUILTIN,
    IMG_DIR_PERSIST,
    MANIFEST_EXTENDED_VERSION,
    MANIFEST_FILE,
    MANIFEST_PURPOSE,
    MANIFEST_VERSION,
    PURPOSE,
    SOFTWARE_OBJPATH,
    VERSION,
    VERSION_IFACE,
)
from psufwupd.errors import ImageScanWarning, ManifestError
from psufwupd.events import VersionDiscovered
from psufwupd.version import Version, VersionPurpose

PathLike = Union[str, Path]


class ScanStatus(Enum):
    """Outcome of looking for an image."""

    FOUND = "found"
    NO_MODEL = "no_model"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"


@dataclass
class ScanResult:
    """Result of a directory or manifest lookup."""

    status: ScanStatus
    path: Optional[Path] = None
    message: str = ""
    version: str = ""
    ext_version: str = ""
    model: str = ""

    @property
    def found(self) -> bool:
        return self.status == ScanStatus.FOUND


def is_under(path: PathLike, base: PathLike) -> bool:
    """Check if path is base or lies below it."""
    path = os.path.abspath(str(path))
    base = os.path.abspath(str(base))
    try:
        return os.path.commonpath([path, base]) == base
    except ValueError:
        return False


class ImageStore:
    """Access to the builtin, persisted and uploaded image directories."""

    def __init__(
        self,
        upload_dir: PathLike = IMG_DIR,
        persist_dir: PathLike = IMG_DIR_PERSIST,
        builtin_dir: PathLike = IMG_DIR_BUILTIN,
        logger: logging.Logger = None,
    ):
        self.upload_dir = Path(upload_dir)
        self.persist_dir = Path(persist_dir)
        self.builtin_dir = Path(builtin_dir)
        self.logger = logger or logging.getLogger(__name__)

    def scan_directories(self, builtin_only: bool = False) -> List[Path]:
        """Directories to scan for stored images, builtin first."""
        if builtin_only:
            return [self.builtin_dir]
        return [self.builtin_dir, self.persist_dir]

    def is_builtin(self, path: PathLike) -> bool:
        return bool(path) and is_under(path, self.builtin_dir)

    def is_uploaded(self, path: PathLike) -> bool:
        return bool(path) and is_under(path, self.upload_dir)

    @staticmethod
    def _require_directory(path: Path) -> None:
        if not path.exists():
            raise ImageScanWarning(f"Directory does not exist: {path}")
        if not path.is_dir():
            raise ManifestError(f"Path is not a directory: {path}")

    def find_model_directory(self, directory: PathLike, model: str) -> ScanResult:
        """
        Find the model subdirectory within the given directory.

        Args:
            directory: The builtin or persisted image directory
            model (str): A PSU model name, empty if none is known yet

        Returns:
            ScanResult: FOUND with the subdirectory path, NO_MODEL if no model is
            known, NOT_FOUND if a directory is missing, MALFORMED if a path is not
            a directory
        """
        directory = Path(directory)
        try:
            self._require_directory(directory)
            if not model:
                return ScanResult(ScanStatus.NO_MODEL, message="No PSU model known yet")
            model_dir = directory / model
            self._require_directory(model_dir)
        except ImageScanWarning as w:
            return ScanResult(ScanStatus.NOT_FOUND, message=str(w))
        except ManifestError as e:
            return ScanResult(ScanStatus.MALFORMED, message=str(e))
        return ScanResult(ScanStatus.FOUND, path=model_dir, model=model)

    def read_manifest(self, model_dir: PathLike) -> ScanResult:
        """
        Read version and extended version from a model directory's manifest.

        The manifest must exist, carry a version and a model, and the model
        must match the name of the directory.
        """
        model_dir = Path(model_dir)
        try:
            version, ext_version, model = self._parse_manifest(model_dir)
        except ManifestError as e:
            return ScanResult(ScanStatus.MALFORMED, path=model_dir, message=str(e))
        return ScanResult(
            ScanStatus.FOUND,
            path=model_dir,
            version=version,
            ext_version=ext_version,
            model=model,
        )

    @staticmethod
    def _parse_manifest(model_dir: Path):
        manifest = model_dir / MANIFEST_FILE
        if not manifest.exists():
            raise ManifestError(f"Manifest file does not exist: {manifest}")
        if not manifest.is_file():
            raise ManifestError(f"Path is not a file: {manifest}")

        values = Version.get_values(manifest, [MANIFEST_VERSION, MANIFEST_EXTENDED_VERSION])
        version = values[MANIFEST_VERSION]
        ext_version = values[MANIFEST_EXTENDED_VERSION]
        model = Version.get_ext_version_info(ext_version).get("model", "")

        if not version or not model:
            raise ManifestError(
                f"Invalid information in manifest: path={manifest}, version={version}, model={model}"
            )
        if model_dir.name != model:
            raise ManifestError(f"Model in manifest does not match path: model={model}, path={model_dir}")
        return version, ext_version, model

    def store_image(self, src: PathLike, model: str) -> Optional[str]:
        """
        Copy an uploaded image into the persisted directory of its model.

        Only images in the upload directory are stored, builtin and already
        persisted images are left alone. Any previous copy for the model is
        replaced.

        Returns:
            Optional[str]: The new image path, None if nothing was stored

        Raises:
            OSError: If the copy fails
        """
        if not self.is_uploaded(src) or not model:
            return None
        dst = self.persist_dir / model
        if dst.exists():
            shutil.rmtree(dst)
        dst.mkdir(parents=True)
        for entry in Path(src).iterdir():
            if entry.is_dir():
                shutil.copytree(entry, dst / entry.name)
            else:
                shutil.copy2(entry, dst / entry.name)
        self.logger.info(f"Stored PSU image {src} in {dst}")
        return str(dst)

    def remove_uploaded_image(self, path: PathLike) -> bool:
        """
        Delete an uploaded image directory.

        Returns:
            bool: True if the directory was removed

        Raises:
            OSError: If the removal fails
        """
        if not self.is_uploaded(path) or not Path(path).exists():
            return False
        shutil.rmtree(path)
        self.logger.info(f"Removed uploaded image {path}")
        return True

    def discover_uploaded_images(self, known: Iterable[str] = ()) -> List[VersionDiscovered]:
        """
        Build VersionDiscovered events for the images in the upload directory.

        Args:
            known: Image directories already reported, they are skipped

        Returns:
            List[VersionDiscovered]: One event per new image with a manifest
        """
        events = []
        known = set(known)
        if not self.upload_dir.is_dir():
            return events
        for image_dir in sorted(self.upload_dir.iterdir()):
            manifest = image_dir / MANIFEST_FILE
            if str(image_dir) in known or not manifest.is_file():
                continue
            values = Version.get_values(manifest, [MANIFEST_VERSION, MANIFEST_PURPOSE])
            purpose = VersionPurpose.from_string(values[MANIFEST_PURPOSE])
            if not values[MANIFEST_VERSION] or purpose == VersionPurpose.UNKNOWN:
                self.logger.warning(f"Skipping image {image_dir}: no version or purpose in manifest")
                continue
            interfaces = {
                VERSION_IFACE: {PURPOSE: purpose.value, VERSION: values[MANIFEST_VERSION]},
                FILEPATH_IFACE: {"Path": str(image_dir)},
            }
            events.append(VersionDiscovered(path=f"{SOFTWARE_OBJPATH}/{image_dir.name}", interfaces=interfaces))
        return events
