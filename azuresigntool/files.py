# Copyright 2024 The AzureSignTool Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Resolution of the set of files to sign.
"""

from __future__ import annotations

import glob
import os
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional


def _identity(path: Path) -> str:
    return os.path.normcase(os.path.abspath(path))


def read_file_list(path: Path) -> Iterator[str]:
    """
    Yields the non-blank entries of an input file list, one per line.
    """
    with path.open(encoding="utf-8-sig") as io:
        for line in io:
            line = line.strip()
            if line:
                yield line


def _expand(item: str) -> Iterator[Path]:
    # Only explicit wildcards make a glob: `dir/` is a literal path, and
    # must be written as `dir/*.exe` or `dir/**/*.exe` to match its contents.
    if "*" not in item:
        yield Path(item)
        return

    for match in sorted(glob.glob(item, recursive=True)):
        path = Path(match)
        if path.is_file():
            yield path


def resolve_files(
    items: Iterable[str],
    *,
    file_list: Optional[Path] = None,
) -> List[Path]:
    """
    Resolves explicit paths, glob patterns, and the contents of an input
    file list into a list of paths, de-duplicated by path identity.

    Relative globs are evaluated against the current directory, and only
    ever match files; `**` matches any number of directories.
    Explicit paths are returned as given, even if they don't exist; checking
    for existence is the caller's responsibility.
    """
    entries = list(items)
    if file_list is not None:
        entries.extend(read_file_list(file_list))

    resolved: Dict[str, Path] = {}
    for entry in entries:
        for path in _expand(entry):
            resolved.setdefault(_identity(path), path)

    return list(resolved.values())
