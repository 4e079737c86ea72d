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

from pathlib import Path

import pytest

from azuresigntool import files


@pytest.fixture
def tree(tmp_path, monkeypatch):
    for name in ["a.exe", "b.dll", "readme.txt", "sub/c.exe", "sub/deeper/d.exe"]:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"")
    (tmp_path / "folder.exe").mkdir()

    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_read_file_list(tmp_path):
    file_list = tmp_path / "files.txt"
    file_list.write_text("\ufeffa.exe\n\n  b.dll  \r\n\t\nsub/c.exe", encoding="utf-8")

    assert list(files.read_file_list(file_list)) == ["a.exe", "b.dll", "sub/c.exe"]


def test_explicit_paths_are_kept(tree):
    resolved = files.resolve_files(["a.exe", "missing.exe"])

    assert resolved == [Path("a.exe"), Path("missing.exe")]


def test_glob(tree):
    assert files.resolve_files(["*.exe"]) == [Path("a.exe")]


def test_recursive_glob(tree):
    resolved = files.resolve_files(["**/*.exe"])

    assert sorted(resolved) == sorted(
        [Path("a.exe"), Path("sub/c.exe"), Path("sub/deeper/d.exe")]
    )


def test_glob_without_matches(tree):
    assert files.resolve_files(["*.msi"]) == []


def test_deduplicates_by_identity(tree):
    resolved = files.resolve_files(
        ["a.exe", "./a.exe", str(tree / "a.exe"), "*.exe", "sub/../a.exe"]
    )

    assert resolved == [Path("a.exe")]


def test_file_list_entries_follow_arguments(tree):
    file_list = tree / "files.txt"
    file_list.write_text("sub/c.exe\na.exe\nsub/**/*.exe\n")

    resolved = files.resolve_files(["b.dll"], file_list=file_list)

    assert resolved == [
        Path("b.dll"),
        Path("sub/c.exe"),
        Path("a.exe"),
        Path("sub/deeper/d.exe"),
    ]
