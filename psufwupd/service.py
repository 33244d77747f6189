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
PSU firmware updater service entry point.

Waits for the PSU inventory to settle, loads the running and stored images,
converges the PSUs on the latest image and then keeps reacting to inventory
changes, uploaded images and flashing job results.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional, Set

import yaml

from psufwupd.activation import ActivationStatus
from psufwupd.config import UpdaterConfig, load_updater_config
from psufwupd.constants import FILEPATH_IFACE
from psufwupd.events import EventLoop, UploadScanRequested
from psufwupd.image_store import ImageStore
from psufwupd.inventory_watch import WAIT_FOR_PSU_TIMEOUT, InventoryPoller, wait_for_psu_paths
from psufwupd.item_updater import ItemUpdater
from psufwupd.logger import set_log_directory, setup_logging
from psufwupd.redfish_inventory import RedfishInventory
from psufwupd.update_executor import SystemdUpdateExecutor
from psufwupd.utils import ToolUtils


class PsuUpdaterService:
    """Wires the collaborators, the coordinator and the event loop together."""

    def __init__(self, config: UpdaterConfig, inventory=None, logger: logging.Logger = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.stop_event = threading.Event()

        self.loop = EventLoop()
        self.inventory = inventory or RedfishInventory(config.inventory)
        self.poller = InventoryPoller(self.inventory, self.loop.post)
        self.image_store = ImageStore(config.upload_dir, config.persist_dir, config.builtin_dir)
        self.utils = ToolUtils(
            self.inventory,
            version_util=config.psu_version_util,
            model_util=config.psu_model_util,
            compare_util=config.psu_version_compare_util,
            tool_timeout=config.tool_timeout,
        )
        self.executor = SystemdUpdateExecutor(self.loop.post, job_timeout=config.job_timeout)
        self.item_updater = ItemUpdater(
            self.utils,
            self.executor,
            image_store=self.image_store,
            always_use_builtin_img_dir=config.always_use_builtin_img_dir,
            update_service_template=config.psu_update_service,
            identity_timeout=config.identity_timeout,
            identity_interval=config.identity_interval,
            inventory_watcher=self.poller,
        )
        self.item_updater.register(self.loop)
        self.loop.register(UploadScanRequested, lambda _: self.discover_uploaded_images())
        self._threads: List[threading.Thread] = []
        self._reported_images: Set[str] = set()

    def start(self, wait_timeout: float = WAIT_FOR_PSU_TIMEOUT) -> None:
        """Wait for the PSUs and process the running and stored images."""
        paths = wait_for_psu_paths(self.inventory, timeout=wait_timeout)
        self.logger.info(f"Found {len(paths)} PSU inventory path(s)")
        self.item_updater.process_psu_image_and_sync_to_latest()
        self.discover_uploaded_images()

    def discover_uploaded_images(self) -> int:
        # Drop images no longer in the upload directory
        self._reported_images = {p for p in self._reported_images if os.path.isdir(p)}
        known = {v.path for v in self.item_updater.versions.values() if v.path} | self._reported_images
        events = self.image_store.discover_uploaded_images(known)
        for event in events:
            self._reported_images.add(event.interfaces[FILEPATH_IFACE]["Path"])
            self.loop.post(event)
        return len(events)

    def _watch(self) -> None:
        while not self.stop_event.wait(self.config.poll_interval):
            self.poller.poll()
            self.loop.post(UploadScanRequested())

    def run(self) -> None:
        """Run until stop() is called."""
        watcher = threading.Thread(target=self._watch, name="psu-inventory-watch", daemon=True)
        watcher.start()
        self._threads.append(watcher)
        try:
            self.loop.run(self.stop_event)
        finally:
            self.shutdown()

    def run_once(self) -> int:
        """
        Process the pending events, waiting for running activations to end.

        Returns:
            int: Number of events handled
        """
        handled = self.loop.run_until_idle()
        while self.is_activating():
            if self.loop.run_once(timeout=self.config.poll_interval):
                handled += 1
        return handled

    def is_activating(self) -> bool:
        return any(a.status == ActivationStatus.ACTIVATING for a in self.item_updater.activations.values())

    def stop(self) -> None:
        self.stop_event.set()

    def shutdown(self) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout=self.config.poll_interval)
        self.executor.shutdown(wait=False)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="psufwupd",
        description="PSU firmware update service",
    )
    parser.add_argument("-c", "--config", help="Path to the YAML configuration file")
    parser.add_argument("-l", "--log-dir", help="Directory for the log files")
    parser.add_argument("--console", action="store_true", help="Also log to the console")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Scan the PSUs and images, sync to the latest image, handle pending events and exit",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_updater_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: unable to load configuration: {e}", file=sys.stderr)
        return 1

    set_log_directory(args.log_dir or config.log_directory)
    logger = setup_logging("psufwupd", console_output=args.console)

    service = PsuUpdaterService(config)
    signal.signal(signal.SIGTERM, lambda *_: service.stop())
    signal.signal(signal.SIGINT, lambda *_: service.stop())

    service.start()
    if args.once:
        handled = service.run_once()
        logger.info(f"Handled {handled} event(s)")
        service.shutdown()
        return 0

    logger.info("PSU firmware update service started")
    service.run()
    logger.info("PSU firmware update service stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
