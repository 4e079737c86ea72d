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
Hashing APIs.
"""

from __future__ import annotations

import enum
from typing import Optional

from cryptography.hazmat.primitives import hashes

from azuresigntool.errors import ConfigurationError


class HashAlgorithm(str, enum.Enum):
    """
    The digest algorithms usable for file digests and timestamp digests.
    """

    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA384 = "SHA384"
    SHA512 = "SHA512"

    @classmethod
    def parse(cls, name: Optional[str], option: str = "digest") -> HashAlgorithm:
        """
        Returns the `HashAlgorithm` for `name`, compared case-insensitively.

        Raises `ConfigurationError` naming `option` and the allowed values
        if `name` is missing or unknown.
        """
        allowed = ", ".join(a.value for a in cls)

        if name is None:
            raise ConfigurationError(
                f"'{option}' is required. Allowed values are [{allowed}]."
            )

        for algorithm in cls:
            if algorithm.value == name.upper():
                return algorithm

        raise ConfigurationError(
            f"'{name}' is not a valid hash algorithm for '{option}'. "
            f"Allowed values are [{allowed}]."
        )

    def to_cryptography(self) -> hashes.HashAlgorithm:
        """
        Returns the matching Cryptography `HashAlgorithm` instance.
        """
        return _CRYPTOGRAPHY_HASHES[self]()

    @property
    def digest_size(self) -> int:
        return self.to_cryptography().digest_size

    @property
    def digest_info_prefix(self) -> bytes:
        """
        The DER `DigestInfo` prefix (RFC 8017, section 9.2) for this
        algorithm, for signing schemes that take a pre-encoded digest.
        """
        return _DIGEST_INFO_PREFIXES[self]


_CRYPTOGRAPHY_HASHES = {
    HashAlgorithm.SHA1: hashes.SHA1,
    HashAlgorithm.SHA256: hashes.SHA256,
    HashAlgorithm.SHA384: hashes.SHA384,
    HashAlgorithm.SHA512: hashes.SHA512,
}

_DIGEST_INFO_PREFIXES = {
    HashAlgorithm.SHA1: bytes.fromhex("3021300906052b0e03021a05000414"),
    HashAlgorithm.SHA256: bytes.fromhex("3031300d060960864801650304020105000420"),
    HashAlgorithm.SHA384: bytes.fromhex("3041300d060960864801650304020205000430"),
    HashAlgorithm.SHA512: bytes.fromhex("3051300d060960864801650304020305000440"),
}
