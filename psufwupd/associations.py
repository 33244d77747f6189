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
Association store linking firmware images to PSU inventory paths.
"""

from typing import Iterable, Iterator, List, Optional, Tuple

Association = Tuple[str, str, str]


class AssociationSet:
    """Ordered list of (forward, reverse, path) triples."""

    def __init__(self, associations: Optional[Iterable[Association]] = None):
        self._associations: List[Association] = [tuple(a) for a in associations or []]

    def add(self, forward: str, reverse: str, path: str) -> None:
        self._associations.append((forward, reverse, path))

    def remove(self, path: str) -> int:
        """
        Remove every association that targets the given path.

        Returns:
            int: Number of associations removed
        """
        before = len(self._associations)
        self._associations = [a for a in self._associations if a[2] != path]
        return before - len(self._associations)

    def remove_role(self, forward: str) -> int:
        """Remove every association with the given forward role."""
        before = len(self._associations)
        self._associations = [a for a in self._associations if a[0] != forward]
        return before - len(self._associations)

    def contains(self, forward: str, reverse: str, path: str) -> bool:
        return (forward, reverse, path) in self._associations

    def is_associated(self, path: str) -> bool:
        return is_associated(path, self._associations)

    def paths(self, forward: Optional[str] = None) -> List[str]:
        return [a[2] for a in self._associations if forward is None or a[0] == forward]

    def __len__(self) -> int:
        return len(self._associations)

    def __iter__(self) -> Iterator[Association]:
        return iter(list(self._associations))

    def __getitem__(self, index: int) -> Association:
        return self._associations[index]

    def __eq__(self, other) -> bool:
        if isinstance(other, AssociationSet):
            return self._associations == other._associations
        if isinstance(other, list):
            return self._associations == [tuple(a) for a in other]
        return NotImplemented

    def __repr__(self) -> str:
        return f"AssociationSet({self._associations!r})"


def is_associated(path: str, associations: Iterable[Association]) -> bool:
    """Check if the path is the target of any association in the list."""
    return any(a[2] == path for a in associations)
