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
API for batch signing files with a key held in Azure Key Vault.

Example:

```python
from pathlib import Path

from azuresigntool._internal.signtool import SignTool
from azuresigntool.credentials import ManagedIdentity
from azuresigntool.sign import SigningRequest, sign_files

request = SigningRequest(
    vault_url="https://my-vault.vault.azure.net",
    certificate_name="my-certificate",
    credential=ManagedIdentity(),
    continue_on_error=True,
)

outcome = sign_files(request, [Path("app.exe"), Path("app.dll")], SignTool())
print(outcome.exit_status)
```
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    List,
    MutableMapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from cryptography import x509

from azuresigntool._internal import authenticode, signtool
from azuresigntool.credentials import (
    MaterializedSigningContext,
    ResolvedCredential,
    materialize,
)
from azuresigntool.errors import ConfigurationError, Error
from azuresigntool.hashes import HashAlgorithm
from azuresigntool.results import (
    E_FAIL,
    ExitStatus,
    OutcomeCategory,
    classify,
    exit_status,
    format_hresult,
)
from azuresigntool.timestamp import NoTimestamp, TimestampConfiguration

_logger = logging.getLogger(__name__)

# How often the dispatching thread wakes up while waiting on workers, so
# that an interrupt is handled promptly on every platform.
_POLL_INTERVAL = 0.5


def page_hashing_mode(page_hashing: bool, no_page_hashing: bool) -> Optional[bool]:
    """
    Collapses the `--page-hashing`/`--no-page-hashing` flags into a
    tri-state: `None` leaves the platform default in place.
    """
    if page_hashing and no_page_hashing:
        raise ConfigurationError(
            "Cannot use '--page-hashing' and '--no-page-hashing' options together."
        )
    if page_hashing:
        return True
    if no_page_hashing:
        return False
    return None


@dataclass(frozen=True)
class SigningRequest:
    """
    The batch-level signing configuration. Never mutated once built.
    """

    vault_url: str
    certificate_name: str
    credential: ResolvedCredential
    authority: Optional[str] = None
    file_digest: HashAlgorithm = HashAlgorithm.SHA256
    timestamp: TimestampConfiguration = field(default_factory=NoTimestamp)
    additional_certificates: Tuple[x509.Certificate, ...] = ()
    page_hashing: Optional[bool] = None
    skip_signed: bool = False
    append_signature: bool = False
    continue_on_error: bool = False
    max_parallelism: Optional[int] = None
    description: Optional[str] = None
    description_url: Optional[str] = None

    def __post_init__(self) -> None:
        if self.max_parallelism == 0:
            raise ConfigurationError(
                "'--max-degree-of-parallelism' must be a positive integer, or negative one."
            )

    def worker_count(self, batch_size: int) -> int:
        """
        Returns the worker pool width for a batch of `batch_size` files.

        `None` means one worker per CPU; any negative bound means unbounded.
        """
        if self.max_parallelism is None:
            bound = os.cpu_count() or 1
        elif self.max_parallelism < 0:
            bound = batch_size
        else:
            bound = self.max_parallelism
        return max(1, min(bound, batch_size))


@dataclass(frozen=True)
class SigningContext:
    """
    The signing state shared, read-only, by every file in a batch.
    """

    materialized: MaterializedSigningContext
    file_digest: HashAlgorithm
    timestamp: TimestampConfiguration
    additional_certificates: Tuple[x509.Certificate, ...] = ()
    page_hashing: Optional[bool] = None

    @property
    def certificate(self) -> x509.Certificate:
        return self.materialized.certificate

    def sign_digest(self, digest: bytes) -> bytes:
        """
        Signs a file digest (computed with `file_digest`) with the remote key.
        """
        return self.materialized.key.sign_digest(digest, self.file_digest)


class FileSigner(Protocol):
    """
    The low-level primitive that embeds a signature into one file.
    """

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
        Signs `path`, returning a platform status code (0 on success).
        """
        ...


class TaskState(enum.Enum):
    PENDING = enum.auto()
    SIGNING = enum.auto()
    SKIPPED = enum.auto()
    SUCCEEDED = enum.auto()
    FAILED = enum.auto()


@dataclass
class FileTask:
    """
    One input file and what happened to it.
    """

    path: Path
    state: TaskState = TaskState.PENDING
    code: Optional[int] = None


class BatchOutcome:
    """
    The aggregate result of a batch. Counters are safe to update from
    multiple workers.
    """

    def __init__(self, tasks: List[FileTask]) -> None:
        self.tasks = tasks
        self.cancelled = False
        self._succeeded = 0
        self._failed = 0
        self._lock = threading.Lock()

    def record_success(self) -> None:
        with self._lock:
            self._succeeded += 1

    def record_failure(self) -> None:
        with self._lock:
            self._failed += 1

    @property
    def succeeded(self) -> int:
        with self._lock:
            return self._succeeded

    @property
    def failed(self) -> int:
        with self._lock:
            return self._failed

    @property
    def exit_status(self) -> ExitStatus:
        return exit_status(self.succeeded, self.failed)


class _FileScope(logging.LoggerAdapter):
    """
    Scopes every message to the file being processed.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"File: {self.extra['path']}: {msg}", kwargs  # type: ignore[index]


class SigningOrchestrator:
    """
    Signs a batch of files over one shared `SigningContext`, with a
    bounded pool of worker threads.
    """

    def __init__(
        self,
        request: SigningRequest,
        context: SigningContext,
        file_signer: FileSigner,
        *,
        cancellation: Optional[threading.Event] = None,
        signed_check: Callable[[Path], bool] = authenticode.is_signed,
    ) -> None:
        """
        Create a new `SigningOrchestrator`.

        `cancellation` is set to request that no further files be started;
        it is also set internally when a failure must stop the batch.

        `signed_check` detects files that already carry a code signing
        signature, for `SigningRequest.skip_signed`.
        """
        self._request = request
        self._context = context
        self._file_signer = file_signer
        self._cancellation = cancellation or threading.Event()
        self._signed_check = signed_check

    def cancel(self) -> None:
        """
        Requests that no further files be started. Files already being
        signed are allowed to finish.
        """
        self._cancellation.set()

    def run(self, files: Sequence[Path]) -> BatchOutcome:
        """
        Signs every file in `files`, returning the batch's `BatchOutcome`.
        """
        tasks = [FileTask(path) for path in files]
        outcome = BatchOutcome(tasks)
        if not tasks:
            return outcome

        stop_on_failure = not self._request.continue_on_error or len(tasks) == 1
        workers = self._request.worker_count(len(tasks))
        _logger.debug(f"Signing {len(tasks)} file(s) with {workers} worker(s)")

        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="azuresigntool"
        ) as executor:
            futures = [
                executor.submit(self._process, task, outcome, stop_on_failure)
                for task in tasks
            ]
            pending = set(futures)
            while pending:
                done, pending = wait(
                    pending, timeout=_POLL_INTERVAL, return_when=FIRST_EXCEPTION
                )
                for future in done:
                    # Anything raised here is a bug, not a per-file failure.
                    if future.exception() is not None:
                        self._cancellation.set()
                        future.result()

        outcome.cancelled = self._cancellation.is_set()
        return outcome

    def _process(
        self, task: FileTask, outcome: BatchOutcome, stop_on_failure: bool
    ) -> None:
        # Queued tasks are abandoned, not failed, once cancellation is requested.
        if self._cancellation.is_set():
            return

        logger = _FileScope(_logger, {"path": task.path})
        logger.info("Signing file.")

        try:
            if self._request.skip_signed and self._signed_check(task.path):
                logger.info("Skipping already signed file.")
                task.state = TaskState.SKIPPED
                outcome.record_success()
                return

            task.state = TaskState.SIGNING
            code = self._file_signer.sign_file(
                task.path,
                self._context,
                description=self._request.description,
                description_url=self._request.description_url,
                page_hashing=self._request.page_hashing,
                append=self._request.append_signature,
            )
        except (Error, OSError) as exc:
            logger.error(f"An error occurred while signing: {exc}")
            code = E_FAIL

        result = classify(code)
        task.code = result.code

        if result.succeeded:
            logger.info(result.message)
            task.state = TaskState.SUCCEEDED
            outcome.record_success()
            return

        logger.error(result.message)
        if result.category is OutcomeCategory.RECOGNIZED_FAILURE:
            logger.error(f"Signing failed with error {format_hresult(result.code)}.")

        task.state = TaskState.FAILED
        outcome.record_failure()

        if stop_on_failure:
            logger.info("Stopping file signing.")
            self._cancellation.set()


def sign_files(
    request: SigningRequest,
    files: Sequence[Path],
    file_signer: FileSigner,
    *,
    cancellation: Optional[threading.Event] = None,
    signed_check: Callable[[Path], bool] = authenticode.is_signed,
) -> BatchOutcome:
    """
    Signs `files` according to `request`.

    Every file must exist; this is checked before the key vault is
    contacted. The remote signing identity is materialized once, shared by
    every file, and released when the batch finishes.

    Raises `ConfigurationError` for missing files or an unsupported
    `append_signature`, and
    `RemoteConfigurationError` if the signing identity can't be materialized.
    Per-file failures are reported through the returned `BatchOutcome`.
    """
    if not files:
        raise ConfigurationError("At least one file must be specified to sign.")

    problems = [
        f"File '{path}' does not exist." for path in files if not path.is_file()
    ]
    if request.append_signature and not signtool.supports_append_signature():
        problems.append("'--append-signature' requires Windows 11 or later.")
    ConfigurationError.collect(problems)

    with materialize(
        request.vault_url,
        request.certificate_name,
        request.credential,
        authority=request.authority,
    ) as materialized:
        _logger.debug("Creating context")
        context = SigningContext(
            materialized=materialized,
            file_digest=request.file_digest,
            timestamp=request.timestamp,
            additional_certificates=request.additional_certificates,
            page_hashing=request.page_hashing,
        )
        orchestrator = SigningOrchestrator(
            request,
            context,
            file_signer,
            cancellation=cancellation,
            signed_check=signed_check,
        )
        outcome = orchestrator.run(files)

    _logger.info(f"Successful operations: {outcome.succeeded}")
    _logger.info(f"Failed operations: {outcome.failed}")

    return outcome
