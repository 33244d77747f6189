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
Exception types raised by the PSU firmware updater collaborators.

External failures are converted into these at the boundary so the
orchestration code only has to know about a handful of cases.
"""


class PsuUpdaterError(Exception):
    """Base class for all updater errors."""


class InventoryError(PsuUpdaterError):
    """A PSU inventory lookup failed or timed out."""


class UpdateStartError(PsuUpdaterError):
    """The flashing job could not be started."""


class ManifestError(PsuUpdaterError):
    """A manifest is missing required data or is inconsistent with its location."""


class ImageScanWarning(PsuUpdaterError):
    """An image directory is not there. Expected on systems without a stored image."""
