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
The `azuresigntool` Python APIs.

For command-line usage of `azuresigntool`, refer to the `azuresigntool`
README.

Otherwise, here are some quick starting points:

* `azuresigntool.credentials`: resolving Azure Key Vault credentials into
  a remote-backed signing identity
* `azuresigntool.sign`: batch Authenticode signing over a shared signing
  context
"""

__version__ = "5.0.0"
