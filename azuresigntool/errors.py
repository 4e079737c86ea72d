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
Exceptions.
"""

from __future__ import annotations

import sys
from logging import Logger
from typing import Iterable

from azuresigntool.results import ExitStatus


class Error(Exception):
    """Base azuresigntool exception type. Defines helpers for diagnostics."""

    exit_status: ExitStatus = ExitStatus.VALIDATION_ERROR

    def diagnostics(self) -> str:
        """Returns human-friendly error information."""

        return str(self)

    def log_and_exit(self, logger: Logger, raise_error: bool = False) -> None:
        """Prints all relevant error information to stderr and exits."""

        remind_verbose = (
            "Raising original exception:"
            if raise_error
            else "For detailed error information, run azuresigntool with the `--verbose` flag."
        )

        logger.error(f"{self.diagnostics()}\n{remind_verbose}")

        if raise_error:
            # don't want "during handling another exception"
            self.__suppress_context__ = True
            raise self

        sys.exit(int(self.exit_status))


class ConfigurationError(Error):
    """
    Raised when the supplied options are missing, malformed, or mutually
    exclusive. Always raised before any remote call or file mutation.
    """

    def __init__(self, *problems: str) -> None:
        """Constructs a `ConfigurationError` from one or more problems."""
        super().__init__("\n".join(problems))
        self.problems = list(problems)

    @classmethod
    def collect(cls, problems: Iterable[str]) -> None:
        """Raises a `ConfigurationError` if `problems` is non-empty."""
        problems = list(problems)
        if problems:
            raise cls(*problems)

    def diagnostics(self) -> str:
        """Returns diagnostics for the error."""
        return "\n".join(self.problems) + (
            "\n\nUse --help for additional information and usage."
        )


class RemoteConfigurationError(Error):
    """
    Raised when the key vault cannot produce a signing identity.
    """

    def diagnostics(self) -> str:
        """Returns diagnostics for the error."""
        return f"""\
        Failed to get configuration from Azure Key Vault.

        Additional context:

        {self}
        """


class RemoteAuthError(RemoteConfigurationError):
    """
    Raised when the key vault, or its identity provider, rejects the
    supplied credential.
    """

    def diagnostics(self) -> str:
        """Returns diagnostics for the error."""
        return f"""\
        Authentication to Azure Key Vault failed.

        Check that the credential is valid for the selected authority and
        has been granted the "get" certificate and "sign" key permissions.

        Additional context:

        {self}
        """


class NetworkError(RemoteConfigurationError):
    """Raised when a connectivity-related issue occurs."""

    def diagnostics(self) -> str:
        """Returns diagnostics for the error."""

        cause_ctx = (
            f"""
        Additional context:

        {self.__cause__}
        """
            if self.__cause__
            else ""
        )

        return (
            """\
        A network issue occurred.

        Check your internet connection and try again.
        """
            + cause_ctx
        )


class KeyVaultSigningError(Error):
    """
    Raised when a remote signing operation fails for a single digest.
    """


class PlatformError(Error):
    """
    Raised when the host can't run the Authenticode signing primitive.
    """

    exit_status = ExitStatus.PLATFORM_NOT_SUPPORTED
