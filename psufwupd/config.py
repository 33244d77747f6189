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
Configuration of the PSU firmware updater.

This module provides the ConfigLoader class which handles YAML
configuration loading, validation and merging, and the UpdaterConfig
settings built from the defaults merged with the user's file.
"""

import copy
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from psufwupd.constants import (
    IMG_DIR,
    IMG_DIR_BUILTIN,
    IMG_DIR_PERSIST,
    PSU_UPDATE_SERVICE,
    PSU_MODEL_UTIL,
    PSU_VERSION_COMPARE_UTIL,
    PSU_VERSION_UTIL,
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "image_dirs": {
        "upload": IMG_DIR,
        "persist": IMG_DIR_PERSIST,
        "builtin": IMG_DIR_BUILTIN,
    },
    "always_use_builtin_img_dir": False,
    "psu_update_service": PSU_UPDATE_SERVICE,
    "tools": {
        "version": PSU_VERSION_UTIL,
        "model": PSU_MODEL_UTIL,
        "compare": PSU_VERSION_COMPARE_UTIL,
        "timeout": 30,
    },
    "job_timeout": 1800,
    "identity": {
        "timeout": 10,
        "interval": 1,
    },
    "inventory": {
        "protocol": "https",
        "ip": "127.0.0.1",
        "port": 443,
        "username": "",
        "password": "",
        "chassis": "chassis",
        "request_timeout": 30,
    },
    "poll_interval": 5,
    "log_directory": "logs",
}


class ConfigLoader:
    """
    Utility class for loading and managing YAML configurations.

    This class provides static methods for common configuration
    operations like loading, validation, and merging.
    """

    @staticmethod
    def load_config(config_path: str) -> Dict[str, Any]:
        """
        Load configuration from YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Dict containing the loaded configuration

        Raises:
            FileNotFoundError: If the configuration file doesn't exist
            yaml.YAMLError: If the YAML file is invalid
            ValueError: If the top level of the file is not a mapping
        """
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, encoding="utf-8") as f:
            config = yaml.safe_load(f)

        # Handle empty files
        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ValueError(f"Configuration file must contain a mapping: {config_path}")

        return config

    @staticmethod
    def get_config_section(
        config: Dict[str, Any], section: str, default: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Get a configuration section, or the default if it doesn't exist."""
        return config.get(section, default if default is not None else {})

    @staticmethod
    def validate_required_fields(config: Dict[str, Any], required_fields: List[str]) -> None:
        """
        Validate that all required top-level fields are present.

        Raises:
            ValueError: If any required field is missing
        """
        missing_fields = [name for name in required_fields if name not in config]

        if missing_fields:
            raise ValueError(f"Missing required configuration field(s): {', '.join(missing_fields)}")

    @staticmethod
    def merge_configs(base_config: Dict[str, Any], override_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two configuration dictionaries.

        Nested dictionaries are merged rather than replaced, override_config
        values take precedence.
        """

        def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
            result = copy.deepcopy(base)
            for key, value in override.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = deep_merge(result[key], value)
                else:
                    result[key] = copy.deepcopy(value)
            return result

        return deep_merge(base_config, override_config)


@dataclass
class UpdaterConfig:
    """Settings of the updater service."""

    upload_dir: str = IMG_DIR
    persist_dir: str = IMG_DIR_PERSIST
    builtin_dir: str = IMG_DIR_BUILTIN
    always_use_builtin_img_dir: bool = False
    psu_update_service: str = PSU_UPDATE_SERVICE
    psu_version_util: str = PSU_VERSION_UTIL
    psu_model_util: str = PSU_MODEL_UTIL
    psu_version_compare_util: str = PSU_VERSION_COMPARE_UTIL
    tool_timeout: int = 30
    job_timeout: int = 1800
    identity_timeout: float = 10
    identity_interval: float = 1
    inventory: Dict[str, Any] = field(default_factory=lambda: copy.deepcopy(DEFAULT_CONFIG["inventory"]))
    poll_interval: float = 5
    log_directory: str = "logs"

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "UpdaterConfig":
        """
        Build the settings from a merged configuration mapping.

        Raises:
            ValueError: If a required section is missing or a value is invalid
        """
        ConfigLoader.validate_required_fields(config, ["image_dirs", "tools", "inventory"])
        image_dirs = ConfigLoader.get_config_section(config, "image_dirs")
        tools = ConfigLoader.get_config_section(config, "tools")
        identity = ConfigLoader.get_config_section(config, "identity")

        settings = cls(
            upload_dir=image_dirs.get("upload", IMG_DIR),
            persist_dir=image_dirs.get("persist", IMG_DIR_PERSIST),
            builtin_dir=image_dirs.get("builtin", IMG_DIR_BUILTIN),
            always_use_builtin_img_dir=bool(config.get("always_use_builtin_img_dir", False)),
            psu_update_service=config.get("psu_update_service", PSU_UPDATE_SERVICE),
            psu_version_util=tools.get("version", ""),
            psu_model_util=tools.get("model", ""),
            psu_version_compare_util=tools.get("compare", ""),
            tool_timeout=tools.get("timeout", 30),
            job_timeout=config.get("job_timeout", 1800),
            identity_timeout=identity.get("timeout", 10),
            identity_interval=identity.get("interval", 1),
            inventory=ConfigLoader.get_config_section(config, "inventory"),
            poll_interval=config.get("poll_interval", 5),
            log_directory=config.get("log_directory", "logs"),
        )
        if "@" not in settings.psu_update_service:
            raise ValueError(f"psu_update_service must be a unit template: {settings.psu_update_service}")
        for name in ("tool_timeout", "job_timeout", "poll_interval", "identity_interval"):
            if getattr(settings, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if settings.identity_timeout < 0:
            raise ValueError("identity_timeout must not be negative")
        return settings


def load_updater_config(config_path: Optional[str] = None) -> UpdaterConfig:
    """
    Load the updater settings, the user's file overriding the defaults.

    Args:
        config_path: Path to a YAML file, None for the defaults only
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path:
        config = ConfigLoader.merge_configs(config, ConfigLoader.load_config(config_path))
    return UpdaterConfig.from_dict(config)
