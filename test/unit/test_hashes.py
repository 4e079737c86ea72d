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

import hashlib

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from azuresigntool.errors import ConfigurationError
from azuresigntool.hashes import HashAlgorithm


class TestParse:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("SHA1", HashAlgorithm.SHA1),
            ("sha256", HashAlgorithm.SHA256),
            ("Sha384", HashAlgorithm.SHA384),
            ("sHa512", HashAlgorithm.SHA512),
        ],
    )
    def test_case_insensitive(self, name, expected):
        assert HashAlgorithm.parse(name) is expected

    def test_missing(self):
        with pytest.raises(
            ConfigurationError,
            match=r"'--file-digest' is required\. Allowed values are "
            r"\[SHA1, SHA256, SHA384, SHA512\]\.",
        ):
            HashAlgorithm.parse(None, "--file-digest")

    @pytest.mark.parametrize("name", ["MD5", "SHA3-256", ""])
    def test_invalid(self, name):
        with pytest.raises(ConfigurationError) as exc_info:
            HashAlgorithm.parse(name, "--timestamp-digest")

        assert exc_info.value.problems == [
            f"'{name}' is not a valid hash algorithm for '--timestamp-digest'. "
            "Allowed values are [SHA1, SHA256, SHA384, SHA512]."
        ]


@pytest.mark.parametrize(
    ("algorithm", "expected"),
    [
        (HashAlgorithm.SHA1, hashes.SHA1),
        (HashAlgorithm.SHA256, hashes.SHA256),
        (HashAlgorithm.SHA384, hashes.SHA384),
        (HashAlgorithm.SHA512, hashes.SHA512),
    ],
)
def test_to_cryptography(algorithm, expected):
    assert isinstance(algorithm.to_cryptography(), expected)
    assert algorithm.digest_size == expected.digest_size


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.mark.parametrize("algorithm", list(HashAlgorithm))
def test_digest_info_prefix(rsa_key, algorithm):
    message = b"digest info test"
    signature = rsa_key.sign(
        message, padding.PKCS1v15(), algorithm.to_cryptography()
    )

    # With no algorithm, the recovered data is the complete DigestInfo.
    digest_info = rsa_key.public_key().recover_data_from_signature(
        signature, padding.PKCS1v15(), None
    )
    digest = hashlib.new(algorithm.value.lower(), message).digest()

    assert digest_info == algorithm.digest_info_prefix + digest
