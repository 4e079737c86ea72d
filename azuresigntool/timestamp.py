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
Timestamping policy selection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from typing_extensions import TypeAlias

from azuresigntool.errors import ConfigurationError
from azuresigntool.hashes import HashAlgorithm

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoTimestamp:
    """Signatures are not timestamped."""


@dataclass(frozen=True)
class LegacyTimestamp:
    """A legacy Authenticode timestamp, from the server at `url`."""

    url: str


@dataclass(frozen=True)
class Rfc3161Timestamp:
    """
    An RFC 3161 timestamp from the authority at `url`, requested over a
    `digest` digest.
    """

    url: str
    digest: HashAlgorithm


TimestampConfiguration: TypeAlias = Union[NoTimestamp, LegacyTimestamp, Rfc3161Timestamp]


def select_timestamp_policy(
    *,
    rfc3161_url: Optional[str] = None,
    legacy_url: Optional[str] = None,
    digest: HashAlgorithm = HashAlgorithm.SHA256,
    append_signature: bool = False,
) -> TimestampConfiguration:
    """
    Selects the timestamp policy for a batch.

    Raises `ConfigurationError` if both kinds of timestamp server are given,
    or if a legacy timestamp is combined with signature appending.
    """
    problems = []
    if rfc3161_url is not None and legacy_url is not None:
        problems.append(
            "Cannot use '--timestamp-rfc3161' and '--timestamp-authenticode' options together."
        )
    if append_signature and legacy_url is not None:
        problems.append(
            "Cannot use '--append-signature' and '--timestamp-authenticode' options together."
        )
    ConfigurationError.collect(problems)

    if rfc3161_url is not None:
        return Rfc3161Timestamp(rfc3161_url, digest)
    elif legacy_url is not None:
        _logger.warning(
            "Authenticode timestamps should only be used for compatibility purposes. "
            "RFC3161 timestamps should be used."
        )
        return LegacyTimestamp(legacy_url)
    else:
        _logger.warning(
            "Signatures will not be timestamped. Signatures will become invalid "
            "when the signing certificate expires."
        )
        return NoTimestamp()
