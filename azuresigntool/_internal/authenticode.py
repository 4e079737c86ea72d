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
Inspection of Authenticode signatures embedded in PE files.

See: <https://learn.microsoft.com/en-us/windows/win32/debug/pe-format#the-attribute-certificate-table-image-only>
"""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import List, Optional, Tuple

import pefile
from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import ExtendedKeyUsageOID

_logger = logging.getLogger(__name__)

_SECURITY_DIRECTORY = pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_SECURITY"]
_WIN_CERT_TYPE_PKCS_SIGNED_DATA = 0x0002


class AuthenticodeFormatError(ValueError):
    """
    Raised when a file is not a well-formed PE image.
    """


def _security_directory(path: Path) -> Optional[Tuple[int, int]]:
    """
    Returns the `(file offset, size)` of the attribute certificate table,
    or `None` if the image doesn't have one.
    """
    try:
        pe = pefile.PE(str(path), fast_load=True)
    except (pefile.PEFormatError, ValueError) as exc:
        # `ValueError` comes from mapping an empty file.
        raise AuthenticodeFormatError(str(exc)) from exc

    try:
        directories = pe.OPTIONAL_HEADER.DATA_DIRECTORY
        if len(directories) <= _SECURITY_DIRECTORY:
            return None
        security = directories[_SECURITY_DIRECTORY]
    finally:
        pe.close()

    # The security directory is the one entry holding a file offset, not an RVA.
    if security.VirtualAddress == 0 or security.Size == 0:
        return None
    return security.VirtualAddress, security.Size


def _der_length(blob: bytes) -> int:
    """
    Returns the full length of the DER TLV at the start of `blob`, so that
    any alignment padding after it can be dropped.
    """
    if len(blob) < 2:
        raise AuthenticodeFormatError("truncated signature")

    length = blob[1]
    if length < 0x80:
        return 2 + length

    nbytes = length & 0x7F
    return 2 + nbytes + int.from_bytes(blob[2 : 2 + nbytes], "big")


def embedded_signature(path: Path) -> Optional[bytes]:
    """
    Returns the DER-encoded PKCS#7 `SignedData` of the first Authenticode
    signature in the PE file at `path`, or `None` if it is unsigned.

    Raises `AuthenticodeFormatError` if `path` is not a PE image.
    """
    directory = _security_directory(path)
    if directory is None:
        return None

    offset, size = directory
    with path.open("rb") as io:
        io.seek(offset)
        table = io.read(size)

    try:
        length, _revision, cert_type = struct.unpack_from("<IHH", table, 0)
    except struct.error as exc:
        raise AuthenticodeFormatError("truncated attribute certificate table") from exc

    if cert_type != _WIN_CERT_TYPE_PKCS_SIGNED_DATA:
        return None

    blob = table[8:length]
    return blob[: _der_length(blob)]


def embedded_certificates(path: Path) -> List[x509.Certificate]:
    """
    Returns every certificate carried by the file's Authenticode signature.
    """
    signature = embedded_signature(path)
    if signature is None:
        return []
    return pkcs7.load_der_pkcs7_certificates(signature)


def _is_ca(certificate: x509.Certificate) -> bool:
    try:
        constraints = certificate.extensions.get_extension_for_class(
            x509.BasicConstraints
        )
    except x509.ExtensionNotFound:
        return False
    return constraints.value.ca


def is_signed(path: Path) -> bool:
    """
    Returns `True` if the file carries an Authenticode signature whose
    signing certificate has the code signing extended key usage.

    Files that aren't PE images, or whose signature can't be parsed, are
    reported as unsigned.
    """
    try:
        certificates = embedded_certificates(path)
    except ValueError as exc:
        _logger.debug(f"{path}: no readable Authenticode signature ({exc})")
        return False

    for certificate in certificates:
        # Issuers in the chain may also carry the EKU; only the leaf counts.
        if _is_ca(certificate):
            continue

        try:
            eku = certificate.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
        except x509.ExtensionNotFound:
            continue

        if ExtendedKeyUsageOID.CODE_SIGNING in eku.value:
            return True

    return False


def has_signature(path: Path) -> bool:
    """
    Returns `True` if the file carries any Authenticode signature at all.
    """
    try:
        return embedded_signature(path) is not None
    except ValueError:
        return False
