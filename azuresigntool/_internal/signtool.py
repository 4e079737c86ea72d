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
Authenticode signing through Windows `signtool.exe`, with the private key
kept remote.

The file is signed in three steps, each working in a private temporary
directory:

1. `signtool sign /dg` computes the Authenticode digest for the file and
   the public certificate, and writes it out (base64) as `<name>.dig`;
2. the digest is signed with the shared `SigningContext` (i.e. by Key Vault)
   and written back (base64) as `<name>.dig.signed`;
3. `signtool sign /di` ingests the signed digest into the file.

A timestamp, if requested, is then added with `signtool timestamp`.

See: <https://learn.microsoft.com/en-us/windows/win32/seccrypto/signtool>
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import shutil
import subprocess  # nosec B404
import sys
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from cryptography.hazmat.primitives.serialization import Encoding, pkcs7

from azuresigntool._internal import authenticode
from azuresigntool.errors import PlatformError
from azuresigntool.results import E_FAIL, S_OK, hresult
from azuresigntool.timestamp import (
    LegacyTimestamp,
    Rfc3161Timestamp,
    TimestampConfiguration,
)

if TYPE_CHECKING:
    from azuresigntool.sign import SigningContext

_logger = logging.getLogger(__name__)

DEFAULT_SIGNTOOL = "signtool.exe"

# signtool exits with 2 when it succeeded with warnings.
_SUCCESS_EXIT_CODES = (0, 2)
_HRESULT_PATTERN = re.compile(r"0x([0-9A-Fa-f]{8})")
_APPEND_SIGNATURE_MIN_BUILD = 22000


def is_windows() -> bool:
    return sys.platform == "win32"


def supports_append_signature() -> bool:
    """
    Returns whether this host can append signatures (Windows 11 or later).
    """
    if not is_windows():
        return False
    return sys.getwindowsversion().build >= _APPEND_SIGNATURE_MIN_BUILD  # type: ignore[attr-defined]


def find_signtool(executable: Optional[str] = None) -> str:
    """
    Returns the full path of the `signtool` executable to use.

    Raises `PlatformError` if it can't be found.
    """
    executable = executable or DEFAULT_SIGNTOOL
    found = shutil.which(executable)
    if found is None:
        raise PlatformError(
            f"Unable to find {executable!r}. Install the Windows SDK signing tools, "
            "or pass its location with '--signtool'."
        )
    return found


class SignTool:
    """
    A `FileSigner` backed by `signtool.exe`.
    """

    def __init__(self, executable: str = DEFAULT_SIGNTOOL) -> None:
        self.executable = executable

    def _run(self, args: List[str]) -> int:
        """
        Runs signtool, returning the `HRESULT` it reported.
        """
        _logger.debug(f"Running signtool {' '.join(args)}")
        process = subprocess.run(  # nosec B603
            [self.executable, *args],
            capture_output=True,
            text=True,
            check=False,
        )
        output = f"{process.stdout}\n{process.stderr}".strip()
        if output:
            _logger.debug(output)

        if process.returncode in _SUCCESS_EXIT_CODES:
            return S_OK

        match = _HRESULT_PATTERN.search(output)
        if match is None:
            return E_FAIL
        return hresult(int(match.group(1), 16))

    def sign_file(
        self,
        path: Path,
        context: SigningContext,
        *,
        description: Optional[str],
        description_url: Optional[str],
        page_hashing: Optional[bool],
        append: bool,
    ) -> int:
        """
        Signs `path` in place, returning an `HRESULT`.
        """
        # The appended signature's index, for timestamping it afterwards.
        appended_index = 1 if append and authenticode.has_signature(path) else None

        with tempfile.TemporaryDirectory(prefix="azuresigntool-") as tmp:
            workdir = Path(tmp)

            certificate = workdir / "signing.cer"
            certificate.write_bytes(context.certificate.public_bytes(Encoding.DER))

            options = ["/fd", context.file_digest.value, "/f", str(certificate)]
            if description is not None:
                options += ["/d", description]
            if description_url is not None:
                options += ["/du", description_url]
            if page_hashing is True:
                options.append("/ph")
            elif page_hashing is False:
                options.append("/nph")
            if append:
                options.append("/as")
            if context.additional_certificates:
                chain = workdir / "additional.p7b"
                chain.write_bytes(
                    pkcs7.serialize_certificates(
                        list(context.additional_certificates), Encoding.DER
                    )
                )
                options += ["/ac", str(chain)]

            code = self._run(["sign", *options, "/dg", str(workdir), str(path)])
            if code != S_OK:
                return code

            digest_file = workdir / f"{path.name}.dig"
            try:
                digest = base64.b64decode(digest_file.read_text().strip(), validate=True)
            except binascii.Error as exc:
                _logger.error(f"signtool produced an unreadable digest: {exc}")
                return E_FAIL

            signature = context.sign_digest(digest)
            signed_digest_file = workdir / f"{path.name}.dig.signed"
            signed_digest_file.write_text(base64.b64encode(signature).decode())

            ingest = ["sign", "/di", str(workdir)]
            if append:
                ingest.append("/as")
            code = self._run([*ingest, str(path)])
            if code != S_OK:
                return code

        return self._timestamp(path, context.timestamp, appended_index)

    def _timestamp(
        self,
        path: Path,
        timestamp: TimestampConfiguration,
        index: Optional[int],
    ) -> int:
        if isinstance(timestamp, Rfc3161Timestamp):
            args = ["timestamp", "/tr", timestamp.url, "/td", timestamp.digest.value]
            if index is not None:
                args += ["/tp", str(index)]
        elif isinstance(timestamp, LegacyTimestamp):
            args = ["timestamp", "/t", timestamp.url]
        else:
            return S_OK

        return self._run([*args, str(path)])
