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
Names, paths and defaults shared by the PSU firmware updater.
"""

# Object paths
SOFTWARE_OBJPATH = "/xyz/openbmc_project/software"
PSU_INVENTORY_PATH_BASE = "/xyz/openbmc_project/inventory"

# Image directories
IMG_DIR = "/tmp/images"
IMG_DIR_PERSIST = "/var/lib/obmc/psu"
IMG_DIR_BUILTIN = "/usr/share/obmc/psu"
MANIFEST_FILE = "MANIFEST"

# Manifest keys
MANIFEST_VERSION = "version"
MANIFEST_EXTENDED_VERSION = "extended_version"
MANIFEST_PURPOSE = "purpose"

# Flashing job template, the arguments are inserted after the '@'
PSU_UPDATE_SERVICE = "psu-update@.service"

# Vendor tools
PSU_VERSION_UTIL = "psutils --raw --get-version"
PSU_MODEL_UTIL = "psutils --raw --get-model"
PSU_VERSION_COMPARE_UTIL = "psutils --raw --compare"

# Inventory interfaces and properties
ITEM_IFACE = "xyz.openbmc_project.Inventory.Item"
PSU_INVENTORY_IFACE = "xyz.openbmc_project.Inventory.Item.PowerSupply"
ASSET_IFACE = "xyz.openbmc_project.Inventory.Decorator.Asset"
VERSION_IFACE = "xyz.openbmc_project.Software.Version"
FILEPATH_IFACE = "xyz.openbmc_project.Common.FilePath"

PRESENT = "Present"
MODEL = "Model"
MANUFACTURER = "Manufacturer"
VERSION = "Version"
PURPOSE = "Purpose"

# Association roles
ACTIVATION_FWD_ASSOCIATION = "inventory"
ACTIVATION_REV_ASSOCIATION = "activation"
ACTIVE_FWD_ASSOCIATION = "active"
ACTIVE_REV_ASSOCIATION = "software_version"
FUNCTIONAL_FWD_ASSOCIATION = "functional"
FUNCTIONAL_REV_ASSOCIATION = "software_version"
UPDATEABLE_FWD_ASSOCIATION = "updateable"
UPDATEABLE_REV_ASSOCIATION = "software_version"

# Progress reported while a sequence runs
PROGRESS_START = 10
PROGRESS_SPAN = 80
PROGRESS_DONE = 100
