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
Loading of additional certificates for the signature's certificate chain.
"""

from __future__ import annotations

import enum
import logging
from pathlib import Path
from typing import Iterable, List

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import pkcs7

from azuresigntool.errors import ConfigurationError

_logger = logging.getLogger(__name__)


class ContentType(enum.Enum):
    """
    The container types a certificate file may hold.
    """

    CERT = enum.auto()
    PKCS7 = enum.auto()
    UNKNOWN = enum.auto()


def _content_type(data: bytes) -> ContentType:
    if data.lstrip().startswith(b"-----BEGIN"):
        if b"-----BEGIN CERTIFICATE-----" in data:
            return ContentType.CERT
        elif b"-----BEGIN PKCS7-----" in data:
            return ContentType.PKCS7
        return ContentType.UNKNOWN

    try:
        x509.load_der_x509_certificate(data)
        return ContentType.CERT
    except ValueError:
        pass

    try:
        pkcs7.load_der_pkcs7_certificates(data)
        return ContentType.PKCS7
    except ValueError:
        pass

    return ContentType.UNKNOWN


def _load(data: bytes, content_type: ContentType) -> List[x509.Certificate]:
    pem = data.lstrip().startswith(b"-----BEGIN")
    if content_type is ContentType.CERT:
        if pem:
            return [x509.load_pem_x509_certificate(data)]
        return [x509.load_der_x509_certificate(data)]
    if pem:
        return pkcs7.load_pem_pkcs7_certificates(data)
    return pkcs7.load_der_pkcs7_certificates(data)


def thumbprint(certificate: x509.Certificate) -> str:
    """
    Returns the certificate's thumbprint (uppercase hex SHA-1 fingerprint).
    """
    return certificate.fingerprint(hashes.SHA1()).hex().upper()


def load_additional_certificates(paths: Iterable[Path]) -> List[x509.Certificate]:
    """
    Loads the certificates at `paths`, in order, into a single collection.

    Each file must hold a single certificate (PEM or DER) or a PKCS#7
    certificate bundle (PEM or DER). Anything else, an unreadable file, or a
    parse failure raises `ConfigurationError` naming the offending path.
    """
    collection: List[x509.Certificate] = []

    for path in paths:
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise ConfigurationError(
                f"Specified file {path} could not be read: {exc.strerror}."
            ) from exc

        content_type = _content_type(data)
        if content_type is ContentType.UNKNOWN:
            raise ConfigurationError(
                f"Specified file {path} is not a valid public certificate."
            )

        try:
            certificates = _load(data, content_type)
        except ValueError as exc:
            _logger.debug(f"failed to parse {path}: {exc}")
            raise ConfigurationError(
                f"An error occurred while including additional certificate {path}: {exc}"
            ) from exc

        for certificate in certificates:
            _logger.debug(f"Including additional certificate {thumbprint(certificate)}.")
            collection.append(certificate)

    return collection
