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

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, List, NoReturn, Optional, Tuple

from rich.console import Console
from rich.logging import RichHandler

from azuresigntool import __version__
from azuresigntool._internal import signtool
from azuresigntool.certificates import load_additional_certificates
from azuresigntool.credentials import (
    resolve_authority,
    resolve_credential,
    validate_vault_url,
)
from azuresigntool.errors import ConfigurationError, Error
from azuresigntool.files import resolve_files
from azuresigntool.hashes import HashAlgorithm
from azuresigntool.results import ExitStatus
from azuresigntool.sign import SigningRequest, page_hashing_mode, sign_files
from azuresigntool.timestamp import select_timestamp_policy

_console = Console(file=sys.stderr, no_color=True)
logging.basicConfig(
    format="%(message)s", datefmt="[%X]", handlers=[RichHandler(console=_console)]
)
_logger = logging.getLogger(__name__)

# NOTE: We configure the top package logger, rather than the root logger,
# to avoid overly verbose logging in third-party code (e.g. azure-identity)
# by default.
_package_logger = logging.getLogger("azuresigntool")
_package_logger.setLevel(os.environ.get("AZURESIGNTOOL_LOGLEVEL", "INFO").upper())


def _exit(status: ExitStatus) -> NoReturn:
    sys.exit(int(status))


def _boolify_env(envvar: str) -> bool:
    """
    An `argparse` helper for turning an environment variable into a boolean.

    The semantics here closely mirror `distutils.util.strtobool`.

    See: <https://docs.python.org/3/distutils/apiref.html#distutils.util.strtobool>
    """
    val = os.getenv(envvar)
    if val is None:
        return False

    val = val.lower()
    if val in {"y", "yes", "true", "t", "on", "1"}:
        return True
    elif val in {"n", "no", "false", "f", "off", "0"}:
        return False
    else:
        raise ValueError(f"can't coerce '{val}' to a boolean")


def _add_key_vault_options(group: argparse._ArgumentGroup) -> None:
    """
    Key Vault location and authentication options.
    """
    group.add_argument(
        "-kvu",
        "--azure-key-vault-url",
        metavar="URL",
        type=str,
        default=os.getenv("AZURESIGNTOOL_KEY_VAULT_URL"),
        help="The URL to an Azure Key Vault",
    )
    group.add_argument(
        "-kvc",
        "--azure-key-vault-certificate",
        metavar="NAME",
        type=str,
        default=os.getenv("AZURESIGNTOOL_KEY_VAULT_CERTIFICATE"),
        help="The name of the certificate in Azure Key Vault",
    )
    group.add_argument(
        "-kvi",
        "--azure-key-vault-client-id",
        metavar="ID",
        type=str,
        default=os.getenv("AZURESIGNTOOL_KEY_VAULT_CLIENT_ID"),
        help="The Client ID to authenticate to the Azure Key Vault",
    )
    group.add_argument(
        "-kvs",
        "--azure-key-vault-client-secret",
        metavar="SECRET",
        type=str,
        default=os.getenv("AZURESIGNTOOL_KEY_VAULT_CLIENT_SECRET"),
        help="The Client Secret to authenticate to the Azure Key Vault",
    )
    group.add_argument(
        "-kvt",
        "--azure-key-vault-tenant-id",
        metavar="ID",
        type=str,
        default=os.getenv("AZURESIGNTOOL_KEY_VAULT_TENANT_ID"),
        help="The Tenant Id to authenticate to the Azure Key Vault",
    )
    group.add_argument(
        "-kva",
        "--azure-key-vault-accesstoken",
        metavar="TOKEN",
        type=str,
        default=os.getenv("AZURESIGNTOOL_KEY_VAULT_ACCESSTOKEN"),
        help="The Access Token to authenticate to the Azure Key Vault",
    )
    group.add_argument(
        "-kvm",
        "--azure-key-vault-managed-identity",
        action="store_true",
        default=_boolify_env("AZURESIGNTOOL_KEY_VAULT_MANAGED_IDENTITY"),
        help="Use the current Azure managed identity",
    )
    group.add_argument(
        "-au",
        "--azure-authority",
        metavar="AUTHORITY",
        type=str,
        default=os.getenv("AZURESIGNTOOL_AZURE_AUTHORITY"),
        help="The Azure Authority for Azure Key Vault",
    )


def _add_signature_options(group: argparse._ArgumentGroup) -> None:
    group.add_argument(
        "-d",
        "--description",
        metavar="TEXT",
        type=str,
        help="Provide a description of the signed content",
    )
    group.add_argument(
        "-du",
        "--description-url",
        metavar="URL",
        type=str,
        help="Provide a URL with more information about the signed content",
    )
    group.add_argument(
        "-fd",
        "--file-digest",
        metavar="ALGORITHM",
        type=str,
        default=os.getenv("AZURESIGNTOOL_FILE_DIGEST", "SHA256"),
        help="The digest algorithm to hash the file with",
    )
    group.add_argument(
        "-tr",
        "--timestamp-rfc3161",
        metavar="URL",
        type=str,
        default=os.getenv("AZURESIGNTOOL_TIMESTAMP_RFC3161"),
        help=(
            "Specifies the RFC 3161 timestamp server's URL. If this option (or -t) is "
            "not specified, the signed file will not be timestamped"
        ),
    )
    group.add_argument(
        "-td",
        "--timestamp-digest",
        metavar="ALGORITHM",
        type=str,
        default=os.getenv("AZURESIGNTOOL_TIMESTAMP_DIGEST", "SHA256"),
        help="Used with -tr to request a digest algorithm used by the RFC 3161 timestamp server",
    )
    group.add_argument(
        "-t",
        "--timestamp-authenticode",
        metavar="URL",
        type=str,
        default=os.getenv("AZURESIGNTOOL_TIMESTAMP_AUTHENTICODE"),
        help=(
            "Specify the legacy timestamp server's URL. This option is generally not "
            "recommended. Use --timestamp-rfc3161 instead"
        ),
    )
    group.add_argument(
        "-ac",
        "--additional-certificates",
        metavar="FILE",
        type=Path,
        action="append",
        default=[],
        help="Specify one or more certificates to include in the public certificate chain",
    )
    group.add_argument(
        "-ph",
        "--page-hashing",
        action="store_true",
        help="Generate page hashes for executable files if supported",
    )
    group.add_argument(
        "-nph",
        "--no-page-hashing",
        action="store_true",
        help="Suppress page hashes for executable files if supported",
    )
    group.add_argument(
        "-as",
        "--append-signature",
        action="store_true",
        help="Append the signature, has no effect with --skip-signed",
    )


def _parser() -> argparse.ArgumentParser:
    # Arguments in parent_parser can be used for both commands and subcommands
    parent_parser = argparse.ArgumentParser(add_help=False)
    parent_parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="run with additional debug logging; supply multiple times to increase verbosity",
    )
    parent_parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_boolify_env("AZURESIGNTOOL_QUIET"),
        help="Do not print any output to the console",
    )
    parent_parser.add_argument(
        "--colors",
        action="store_true",
        default=_boolify_env("AZURESIGNTOOL_COLORS"),
        help="Enable color output on the command line",
    )

    parser = argparse.ArgumentParser(
        prog="azuresigntool",
        description="a tool for Authenticode signing files with a certificate in Azure Key Vault",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        parents=[parent_parser],
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"azuresigntool {__version__}"
    )
    subcommands = parser.add_subparsers(
        required=True,
        dest="subcommand",
        metavar="COMMAND",
        help="the operation to perform",
    )

    # `azuresigntool sign`
    sign = subcommands.add_parser(
        "sign",
        help="sign one or more files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        parents=[parent_parser],
    )

    key_vault_options = sign.add_argument_group("Azure Key Vault options")
    _add_key_vault_options(key_vault_options)

    signature_options = sign.add_argument_group("Signature options")
    _add_signature_options(signature_options)

    batch_options = sign.add_argument_group("Batch options")
    batch_options.add_argument(
        "-ifl",
        "--input-file-list",
        metavar="FILE",
        type=Path,
        help="A path to a file that contains a list of files, one per line, to sign",
    )
    batch_options.add_argument(
        "-mdop",
        "--max-degree-of-parallelism",
        metavar="N",
        type=int,
        help="The maximum number of concurrent signing operations (-1 for unbounded)",
    )
    batch_options.add_argument(
        "-coe",
        "--continue-on-error",
        action="store_true",
        default=_boolify_env("AZURESIGNTOOL_CONTINUE_ON_ERROR"),
        help="Continue signing multiple files if an error occurs",
    )
    batch_options.add_argument(
        "-s",
        "--skip-signed",
        action="store_true",
        default=_boolify_env("AZURESIGNTOOL_SKIP_SIGNED"),
        help="Skip files that are already signed",
    )
    batch_options.add_argument(
        "--signtool",
        metavar="FILE",
        type=str,
        default=os.getenv("AZURESIGNTOOL_SIGNTOOL", signtool.DEFAULT_SIGNTOOL),
        help="The signtool executable to sign with",
    )

    sign.add_argument(
        "files",
        metavar="FILE",
        type=str,
        nargs="*",
        help="The files to sign; may contain '*' and '**' wildcards",
    )

    return parser


def _configure_logging(args: argparse.Namespace) -> None:
    _console.no_color = not args.colors

    if args.quiet and not args.verbose:
        _package_logger.setLevel("CRITICAL")
    if args.verbose >= 1:
        _package_logger.setLevel("DEBUG")
    if args.verbose >= 2:
        logging.getLogger().setLevel("DEBUG")


def main(args: Optional[List[str]] = None) -> None:
    if not args:
        args = sys.argv[1:]

    parser = _parser()
    args = parser.parse_args(args)

    # Configure logging upfront, so that we don't miss anything.
    _configure_logging(args)

    _logger.debug(f"parsed arguments {args}")

    if not signtool.is_windows():
        _logger.error("Azure Sign Tool is only supported on Windows.")
        _exit(ExitStatus.PLATFORM_NOT_SUPPORTED)

    try:
        if args.subcommand == "sign":
            _sign(args)
        else:
            parser.error(f"Unknown subcommand: {args.subcommand}")
    except Error as e:
        e.log_and_exit(_logger, args.verbose >= 1)


def _collect(problems: List[str], func: Any, *args: Any, **kwargs: Any) -> Any:
    """
    Calls `func`, recording the problems of any `ConfigurationError` it
    raises instead of propagating it.
    """
    try:
        return func(*args, **kwargs)
    except ConfigurationError as e:
        problems.extend(e.problems)
        return None


def _build_request(args: argparse.Namespace) -> Tuple[SigningRequest, List[Path]]:
    """
    Validates the `sign` arguments, reporting every problem at once.
    """
    problems: List[str] = []

    vault_url = _collect(problems, validate_vault_url, args.azure_key_vault_url)

    if args.azure_key_vault_certificate is None:
        problems.append("--azure-key-vault-certificate is required.")

    page_hashing = _collect(
        problems, page_hashing_mode, args.page_hashing, args.no_page_hashing
    )

    if args.quiet and args.verbose:
        problems.append("Cannot use '--quiet' and '--verbose' options together.")

    credential = _collect(
        problems,
        resolve_credential,
        access_token=args.azure_key_vault_accesstoken,
        client_id=args.azure_key_vault_client_id,
        client_secret=args.azure_key_vault_client_secret,
        tenant_id=args.azure_key_vault_tenant_id,
        managed_identity=args.azure_key_vault_managed_identity,
    )

    if args.append_signature and not signtool.supports_append_signature():
        problems.append("'--append-signature' requires Windows 11 or later.")

    file_list = args.input_file_list
    if file_list is not None and not file_list.is_file():
        problems.append(f"File '{file_list}' does not exist.")
        file_list = None

    file_digest = _collect(
        problems, HashAlgorithm.parse, args.file_digest, "--file-digest"
    )
    timestamp_digest = _collect(
        problems, HashAlgorithm.parse, args.timestamp_digest, "--timestamp-digest"
    )

    timestamp = _collect(
        problems,
        select_timestamp_policy,
        rfc3161_url=args.timestamp_rfc3161,
        legacy_url=args.timestamp_authenticode,
        digest=timestamp_digest or HashAlgorithm.SHA256,
        append_signature=args.append_signature,
    )

    parallelism = args.max_degree_of_parallelism
    if parallelism is not None and (parallelism == 0 or parallelism < -1):
        problems.append(
            "'--max-degree-of-parallelism' must be a positive integer, or negative one."
        )

    authority = _collect(problems, resolve_authority, args.azure_authority)

    files = resolve_files(args.files, file_list=file_list)
    if not files:
        problems.append("At least one file must be specified to sign.")
    for file in files:
        if not file.is_file():
            problems.append(f"File '{file}' does not exist.")

    ConfigurationError.collect(problems)

    additional_certificates = load_additional_certificates(
        args.additional_certificates
    )

    request = SigningRequest(
        vault_url=vault_url,
        certificate_name=args.azure_key_vault_certificate,
        credential=credential,
        authority=authority,
        file_digest=file_digest,
        timestamp=timestamp,
        additional_certificates=tuple(additional_certificates),
        page_hashing=page_hashing,
        skip_signed=args.skip_signed,
        append_signature=args.append_signature,
        continue_on_error=args.continue_on_error,
        max_parallelism=parallelism,
        description=args.description,
        description_url=args.description_url,
    )
    return request, files


def _sign(args: argparse.Namespace) -> None:
    request, files = _build_request(args)
    file_signer = signtool.SignTool(signtool.find_signtool(args.signtool))

    cancellation = threading.Event()

    def _interrupt(signum: int, frame: Any) -> None:
        _logger.info("Cancelling signing operations.")
        cancellation.set()

    previous = signal.signal(signal.SIGINT, _interrupt)
    try:
        outcome = sign_files(request, files, file_signer, cancellation=cancellation)
    finally:
        signal.signal(signal.SIGINT, previous)

    _exit(outcome.exit_status)
