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
Signing outcome codes, their classification, and process exit statuses.

Outcome codes are Windows `HRESULT`s, represented as signed 32-bit
integers (the way the platform reports them to a process).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


def hresult(value: int) -> int:
    """
    Returns the signed 32-bit representation of the given `HRESULT`.
    """
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def format_hresult(code: int) -> str:
    """
    Returns the conventional unsigned hexadecimal rendering of an `HRESULT`.
    """
    return f"{code & 0xFFFFFFFF:08X}"


S_OK = 0
S_SOME_SUCCESS = hresult(0x20000001)
E_ALL_FAILED = hresult(0xA0000002)
E_FAIL = hresult(0x80004005)
E_INVALIDARG = hresult(0x80070057)
E_PLATFORMNOTSUPPORTED = hresult(0x80131539)
COR_E_BADIMAGEFORMAT = hresult(0x8007000B)
TRUST_E_SUBJECT_FORM_UNKNOWN = hresult(0x800B0003)


class OutcomeCategory(enum.Enum):
    """
    The user-facing category of a single file's signing outcome.
    """

    SUCCESS = enum.auto()
    RECOGNIZED_FAILURE = enum.auto()
    UNRECOGNIZED_FAILURE = enum.auto()


@dataclass(frozen=True)
class SigningOutcome:
    """
    A classified signing outcome.
    """

    code: int
    category: OutcomeCategory
    message: str

    @property
    def succeeded(self) -> bool:
        return self.category is OutcomeCategory.SUCCESS


_RECOGNIZED_FAILURES = {
    COR_E_BADIMAGEFORMAT: (
        "The Publisher Identity in the AppxManifest.xml does not match the "
        "subject on the certificate."
    ),
    TRUST_E_SUBJECT_FORM_UNKNOWN: (
        "The file cannot be signed because it is not a recognized file type "
        "for signing or it is corrupt."
    ),
}


def classify(code: int) -> SigningOutcome:
    """
    Maps a raw signing outcome code to a `SigningOutcome`.

    This never raises: any code that isn't success or one of the
    recognized failures is an unrecognized failure.
    """
    code = hresult(code)

    if code == S_OK:
        return SigningOutcome(
            code, OutcomeCategory.SUCCESS, "Signing completed successfully."
        )

    message = _RECOGNIZED_FAILURES.get(code)
    if message is not None:
        return SigningOutcome(code, OutcomeCategory.RECOGNIZED_FAILURE, message)

    return SigningOutcome(
        code,
        OutcomeCategory.UNRECOGNIZED_FAILURE,
        f"Signing failed with error {format_hresult(code)}.",
    )


class ExitStatus(enum.IntEnum):
    """
    The process exit statuses of `azuresigntool`.
    """

    SUCCESS = S_OK
    PARTIAL_SUCCESS = S_SOME_SUCCESS
    ALL_FAILED = E_ALL_FAILED
    VALIDATION_ERROR = E_INVALIDARG
    PLATFORM_NOT_SUPPORTED = E_PLATFORMNOTSUPPORTED


def exit_status(succeeded: int, failed: int) -> ExitStatus:
    """
    Reduces a batch's final counts to a single exit status.
    """
    if failed > 0 and succeeded == 0:
        return ExitStatus.ALL_FAILED
    elif failed > 0:
        return ExitStatus.PARTIAL_SUCCESS
    else:
        return ExitStatus.SUCCESS
