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

import base64
from pathlib import Path

import pretend
import pytest
from cryptography.hazmat.primitives.serialization import pkcs7

from azuresigntool._internal import signtool
from azuresigntool.errors import PlatformError
from azuresigntool.hashes import HashAlgorithm
from azuresigntool.results import E_FAIL, S_OK, TRUST_E_SUBJECT_FORM_UNKNOWN
from azuresigntool.sign import SigningContext
from azuresigntool.timestamp import LegacyTimestamp, NoTimestamp, Rfc3161Timestamp

_DIGEST = b"\x01" * 32


class FakeSignTool:
    """
    Stands in for `signtool.exe`, following its `/dg` and `/di` file
    conventions.
    """

    def __init__(self, results=None, *, digest=None):
        self.results = results or {}
        self.digest = digest or base64.b64encode(_DIGEST).decode()
        self.commands = []
        self.signed_digests = []
        self.additional_certificates = []

    def __call__(self, command, *, capture_output, text, check):
        executable, verb, *args = command
        self.commands.append([verb, *args])
        if "/dg" in args:
            step = "/dg"
        elif "/di" in args:
            step = "/di"
        else:
            step = verb
        returncode, output = self.results.get(step, (0, ""))

        if returncode == 0 and step == "/dg":
            workdir, path = Path(args[args.index("/dg") + 1]), Path(args[-1])
            (workdir / f"{path.name}.dig").write_text(self.digest)
            if "/ac" in args:
                chain = Path(args[args.index("/ac") + 1]).read_bytes()
                self.additional_certificates = (
                    pkcs7.load_der_pkcs7_certificates(chain)
                )
        elif returncode == 0 and step == "/di":
            workdir, path = Path(args[args.index("/di") + 1]), Path(args[-1])
            self.signed_digests.append(
                base64.b64decode((workdir / f"{path.name}.dig.signed").read_text())
            )

        return pretend.stub(returncode=returncode, stdout=output, stderr="")


@pytest.fixture
def fake_signtool(monkeypatch):
    def _fake_signtool(results=None, **kwargs):
        fake = FakeSignTool(results, **kwargs)
        monkeypatch.setattr(signtool.subprocess, "run", fake)
        return fake

    return _fake_signtool


@pytest.fixture
def context(materialized):
    def _context(**kwargs):
        kwargs.setdefault("file_digest", HashAlgorithm.SHA256)
        kwargs.setdefault("timestamp", NoTimestamp())
        return SigningContext(materialized=materialized, **kwargs)

    return _context


def _sign(path, context, **kwargs):
    kwargs.setdefault("description", None)
    kwargs.setdefault("description_url", None)
    kwargs.setdefault("page_hashing", None)
    kwargs.setdefault("append", False)
    return signtool.SignTool("signtool.exe").sign_file(path, context, **kwargs)


class TestPlatform:
    def test_is_windows(self, monkeypatch):
        monkeypatch.setattr(signtool.sys, "platform", "win32")
        assert signtool.is_windows()

        monkeypatch.setattr(signtool.sys, "platform", "linux")
        assert not signtool.is_windows()

    def test_append_needs_windows(self, monkeypatch):
        monkeypatch.setattr(signtool.sys, "platform", "linux")

        assert not signtool.supports_append_signature()

    @pytest.mark.parametrize(("build", "expected"), [(19045, False), (22000, True)])
    def test_append_needs_windows_11(self, monkeypatch, build, expected):
        monkeypatch.setattr(signtool.sys, "platform", "win32")
        monkeypatch.setattr(
            signtool.sys,
            "getwindowsversion",
            lambda: pretend.stub(build=build),
            raising=False,
        )

        assert signtool.supports_append_signature() is expected

    def test_find_signtool(self, monkeypatch):
        which = pretend.call_recorder(lambda name: rf"C:\bin\{name}")
        monkeypatch.setattr(signtool.shutil, "which", which)

        assert signtool.find_signtool() == r"C:\bin\signtool.exe"
        assert signtool.find_signtool("custom.exe") == r"C:\bin\custom.exe"
        assert which.calls == [
            pretend.call("signtool.exe"),
            pretend.call("custom.exe"),
        ]

    def test_find_signtool_missing(self, monkeypatch):
        monkeypatch.setattr(signtool.shutil, "which", lambda name: None)

        with pytest.raises(PlatformError, match="Unable to find 'signtool.exe'"):
            signtool.find_signtool()


class TestSignTool:
    def test_sign(self, fake_signtool, context, input_files, materialized):
        fake = fake_signtool()
        (path,) = input_files("app.exe")

        assert _sign(path, context()) == S_OK

        dg, di = fake.commands
        assert dg[:4] == ["sign", "/fd", "SHA256", "/f"]
        assert dg[-3] == "/dg"
        assert dg[-1] == str(path)
        assert di[:2] == ["sign", "/di"]
        assert di[-1] == str(path)
        assert "/as" not in dg + di

        assert materialized.key.sign_digest.calls == [
            pretend.call(_DIGEST, HashAlgorithm.SHA256)
        ]
        assert fake.signed_digests == [b"signature"]

    def test_sign_options(
        self, fake_signtool, context, input_files, x509_certificate
    ):
        fake = fake_signtool()
        (path,) = input_files("app.exe")
        chain = [x509_certificate(common_name="issuer", ca=True)]

        code = _sign(
            path,
            context(
                file_digest=HashAlgorithm.SHA384,
                additional_certificates=tuple(chain),
            ),
            description="An application",
            description_url="https://example.com",
            page_hashing=True,
        )

        assert code == S_OK
        dg = fake.commands[0]
        assert dg[dg.index("/fd") + 1] == "SHA384"
        assert dg[dg.index("/d") + 1] == "An application"
        assert dg[dg.index("/du") + 1] == "https://example.com"
        assert "/ph" in dg
        assert "/nph" not in dg
        assert fake.additional_certificates == chain

    def test_no_page_hashing(self, fake_signtool, context, input_files):
        fake = fake_signtool()
        (path,) = input_files("app.exe")

        _sign(path, context(), page_hashing=False)

        assert "/nph" in fake.commands[0]
        assert "/ph" not in fake.commands[0]

    def test_rfc3161_timestamp(self, fake_signtool, context, input_files):
        fake = fake_signtool()
        (path,) = input_files("app.exe")
        timestamp = Rfc3161Timestamp(
            "http://timestamp.example.com", HashAlgorithm.SHA384
        )

        assert _sign(path, context(timestamp=timestamp)) == S_OK

        assert fake.commands[-1] == [
            "timestamp",
            "/tr",
            "http://timestamp.example.com",
            "/td",
            "SHA384",
            str(path),
        ]

    def test_legacy_timestamp(self, fake_signtool, context, input_files):
        fake = fake_signtool()
        (path,) = input_files("app.exe")
        timestamp = LegacyTimestamp("http://timestamp.example.com")

        assert _sign(path, context(timestamp=timestamp)) == S_OK

        assert fake.commands[-1] == [
            "timestamp",
            "/t",
            "http://timestamp.example.com",
            str(path),
        ]

    def test_append_to_signed_file(
        self, fake_signtool, context, pe_image, x509_certificate
    ):
        fake = fake_signtool()
        path = pe_image(certificates=[x509_certificate()])
        timestamp = Rfc3161Timestamp(
            "http://timestamp.example.com", HashAlgorithm.SHA256
        )

        assert _sign(path, context(timestamp=timestamp), append=True) == S_OK

        dg, di, ts = fake.commands
        assert "/as" in dg
        assert "/as" in di
        assert ts[-3:] == ["/tp", "1", str(path)]

    def test_append_to_unsigned_file(self, fake_signtool, context, pe_image):
        fake = fake_signtool()
        path = pe_image()
        timestamp = Rfc3161Timestamp(
            "http://timestamp.example.com", HashAlgorithm.SHA256
        )

        assert _sign(path, context(timestamp=timestamp), append=True) == S_OK

        assert "/tp" not in fake.commands[-1]

    def test_digest_failure(self, fake_signtool, context, input_files, materialized):
        fake = fake_signtool(
            {
                "/dg": (
                    1,
                    "SignTool Error: This file format cannot be signed because it "
                    "is not recognized.\nNumber of errors: 1 (0x800B0003)",
                )
            }
        )
        (path,) = input_files("readme.txt")

        assert _sign(path, context()) == TRUST_E_SUBJECT_FORM_UNKNOWN
        assert len(fake.commands) == 1
        assert materialized.key.sign_digest.calls == []

    def test_ingest_failure(self, fake_signtool, context, input_files):
        fake = fake_signtool({"/di": (1, "SignTool Error: something went wrong")})
        (path,) = input_files("app.exe")
        timestamp = LegacyTimestamp("http://timestamp.example.com")

        assert _sign(path, context(timestamp=timestamp)) == E_FAIL
        assert len(fake.commands) == 2

    def test_timestamp_failure(self, fake_signtool, context, input_files):
        fake_signtool({"timestamp": (1, "SignTool Error: 0x80072EE7")})
        (path,) = input_files("app.exe")
        timestamp = LegacyTimestamp("http://timestamp.example.com")

        assert _sign(path, context(timestamp=timestamp)) == -2147012889

    def test_warnings_are_success(self, fake_signtool, context, input_files):
        fake_signtool({"/di": (2, "SignTool Warning: something")})
        (path,) = input_files("app.exe")

        assert _sign(path, context()) == S_OK

    def test_missing_digest(self, monkeypatch, context, input_files, materialized):
        monkeypatch.setattr(
            signtool.subprocess,
            "run",
            lambda command, **kw: pretend.stub(returncode=0, stdout="", stderr=""),
        )
        (path,) = input_files("app.exe")

        with pytest.raises(FileNotFoundError):
            _sign(path, context())

        assert materialized.key.sign_digest.calls == []

    def test_unreadable_digest(self, fake_signtool, context, input_files):
        fake = fake_signtool(digest="not base64!")
        (path,) = input_files("app.exe")

        assert _sign(path, context()) == E_FAIL
        assert len(fake.commands) == 1


@pytest.mark.signtool
def test_find_installed_signtool():
    assert signtool.find_signtool()
