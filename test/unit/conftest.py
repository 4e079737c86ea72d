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

from __future__ import annotations

import datetime
import struct
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import jwt
import pretend
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from cryptography.hazmat.primitives.serialization import Encoding, pkcs7
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from azuresigntool.credentials import ManagedIdentity
from azuresigntool.hashes import HashAlgorithm
from azuresigntool.sign import SigningContext, SigningRequest
from azuresigntool.timestamp import NoTimestamp

TEST_VAULT_URL = "https://example.vault.azure.net"
TEST_KEY_ID = f"{TEST_VAULT_URL}/keys/test-certificate/0123456789abcdef"


@pytest.fixture
def dummy_jwt():
    def _dummy_jwt(claims: dict):
        return jwt.encode(claims, key="definitely not secure")

    return _dummy_jwt


@pytest.fixture
def x509_certificate():
    """
    Builds self-signed test certificates; code signing leaves by default.
    """

    def _x509_certificate(
        *,
        key=None,
        code_signing: bool = True,
        ca: bool = False,
        common_name: str = "azuresigntool test",
    ) -> x509.Certificate:
        key = key or ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        now = datetime.datetime.now(datetime.timezone.utc)

        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - datetime.timedelta(days=1))
            .not_valid_after(now + datetime.timedelta(days=1))
            .add_extension(
                x509.BasicConstraints(ca=ca, path_length=None), critical=True
            )
        )
        if code_signing:
            builder = builder.add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]),
                critical=False,
            )

        algorithm = (
            None if isinstance(key, ed25519.Ed25519PrivateKey) else hashes.SHA256()
        )
        return builder.sign(key, algorithm)

    return _x509_certificate


def _pe_image(
    certificates: Optional[Sequence[x509.Certificate]],
    *,
    magic: int,
    cert_type: int,
    directory_count: int,
) -> bytes:
    image = bytearray(0x200)
    image[0:2] = b"MZ"
    struct.pack_into("<I", image, 0x3C, 0x40)
    image[0x40:0x44] = b"PE\0\0"

    # FILE_HEADER: Machine, then SizeOfOptionalHeader.
    struct.pack_into("<H", image, 0x44, 0x8664 if magic == 0x20B else 0x14C)
    struct.pack_into("<H", image, 0x54, 0xF0 if magic == 0x20B else 0xE0)

    optional_header = 0x40 + 24
    struct.pack_into("<H", image, optional_header, magic)
    if magic == 0x20B:
        count_offset, directories = optional_header + 108, optional_header + 112
    else:
        count_offset, directories = optional_header + 92, optional_header + 96
    struct.pack_into("<I", image, count_offset, directory_count)

    if certificates is None:
        return bytes(image)

    signature = pkcs7.serialize_certificates(list(certificates), Encoding.DER)
    table = struct.pack("<IHH", 8 + len(signature), 0x0200, cert_type) + signature
    table += b"\0" * (-len(table) % 8)
    struct.pack_into("<II", image, directories + 8 * 4, len(image), len(table))
    return bytes(image) + table


@pytest.fixture
def pe_image(tmp_path):
    """
    Writes a minimal PE image, optionally carrying an attribute certificate
    table with the given certificates.
    """

    def _pe_image_file(
        name: str = "app.exe",
        *,
        certificates: Optional[Sequence[x509.Certificate]] = None,
        magic: int = 0x20B,
        cert_type: int = 0x0002,
        directory_count: int = 16,
    ) -> Path:
        path = tmp_path / name
        path.write_bytes(
            _pe_image(
                certificates,
                magic=magic,
                cert_type=cert_type,
                directory_count=directory_count,
            )
        )
        return path

    return _pe_image_file


@pytest.fixture
def input_files(tmp_path) -> Callable[..., List[Path]]:
    def _input_files(*names: str) -> List[Path]:
        paths = []
        for name in names:
            path = tmp_path / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"not really an executable")
            paths.append(path)
        return paths

    return _input_files


@pytest.fixture
def signing_request() -> Callable[..., SigningRequest]:
    def _signing_request(**kwargs) -> SigningRequest:
        kwargs.setdefault("vault_url", TEST_VAULT_URL)
        kwargs.setdefault("certificate_name", "test-certificate")
        kwargs.setdefault("credential", ManagedIdentity())
        return SigningRequest(**kwargs)

    return _signing_request


@pytest.fixture
def materialized(x509_certificate):
    """
    A stand-in for a `MaterializedSigningContext`, with a key that "signs"
    by returning a fixed value.
    """
    key = pretend.stub(
        key_id=TEST_KEY_ID,
        sign_digest=pretend.call_recorder(lambda digest, algorithm: b"signature"),
        close=pretend.call_recorder(lambda: None),
    )
    return pretend.stub(
        key=key,
        key_id=TEST_KEY_ID,
        certificate=x509_certificate(),
        close=pretend.call_recorder(lambda: None),
    )


@pytest.fixture
def signing_context(materialized) -> SigningContext:
    return SigningContext(
        materialized=materialized,
        file_digest=HashAlgorithm.SHA256,
        timestamp=NoTimestamp(),
    )


class FakeFileSigner:
    """
    A thread-safe `FileSigner` that returns canned codes (or raises canned
    exceptions) by file name, and tracks its own concurrency.
    """

    def __init__(
        self,
        results: Optional[Dict[str, Union[int, Exception]]] = None,
        *,
        default: Union[int, Exception] = 0,
        delay: float = 0.0,
        on_sign: Optional[Callable[[Path], None]] = None,
    ) -> None:
        self.results = results or {}
        self.default = default
        self.delay = delay
        self.on_sign = on_sign
        self.calls: List[Path] = []
        self.options: List[dict] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def sign_file(
        self, path, context, *, description, description_url, page_hashing, append
    ):
        with self._lock:
            self.calls.append(path)
            self.options.append(
                {
                    "description": description,
                    "description_url": description_url,
                    "page_hashing": page_hashing,
                    "append": append,
                }
            )
            self.active += 1
            self.max_active = max(self.max_active, self.active)

        try:
            if self.on_sign is not None:
                self.on_sign(path)
            if self.delay:
                time.sleep(self.delay)

            result = self.results.get(path.name, self.default)
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def file_signer():
    return FakeFileSigner
