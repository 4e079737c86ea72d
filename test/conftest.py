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

import os
import shutil
import sys

import pytest


def _has_signtool():
    if sys.platform != "win32":
        return False
    return shutil.which(os.getenv("AZURESIGNTOOL_SIGNTOOL", "signtool.exe")) is not None


def pytest_runtest_setup(item):
    if "signtool" in item.keywords and not _has_signtool():
        pytest.skip("skipping test that requires Windows and signtool.exe")


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "signtool: mark test as requiring Windows and signtool.exe"
    )
