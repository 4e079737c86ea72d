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
Client implementation for interacting with Azure Key Vault.
"""

from __future__ import annotations

import base64
import logging
import threading
from typing import Dict, List, Type, Union
from urllib.parse import quote, urlparse

import requests
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, ClientAuthenticationError
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature
from pydantic import BaseModel, StrictStr, ValidationError

from azuresigntool._internal import USER_AGENT
from azuresigntool.errors import (
    Error,
    KeyVaultSigningError,
    NetworkError,
    RemoteAuthError,
    RemoteConfigurationError,
)
from azuresigntool.hashes import HashAlgorithm

_logger = logging.getLogger(__name__)

API_VERSION = "7.4"
CLIENT_TIMEOUT: int = 30

PublicKey = Union[rsa.RSAPublicKey, ec.EllipticCurvePublicKey]


class KeyVaultCertificateBundle(BaseModel):
    """
    Represents a (subset) of the fields in a Key Vault `CertificateBundle`.

    See: <https://learn.microsoft.com/en-us/rest/api/keyvault/certificates/get-certificate/get-certificate>
    """

    id: StrictStr
    kid: StrictStr
    cer: StrictStr

    @property
    def der(self) -> bytes:
        """The DER-encoded public certificate."""
        return b64decode(self.cer)


class _KeyOperationResult(BaseModel):
    """
    A trivial model for the Key Vault `sign` response payload.
    """

    kid: StrictStr
    value: StrictStr


def b64decode(value: str) -> bytes:
    """
    Decodes a base64 or base64url string, with or without padding.
    """
    value = value.replace("-", "+").replace("_", "/")
    return base64.b64decode(value + "=" * (-len(value) % 4))


def b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode().rstrip("=")


def vault_scope(vault_url: str) -> str:
    """
    Returns the OAuth2 scope for the given vault.

    The scope is the vault's DNS suffix, so that sovereign clouds
    (`vault.azure.cn`, `vault.usgovcloudapi.net`, ...) and managed HSMs
    request a token for the right resource.
    """
    host = urlparse(vault_url).hostname or ""
    _, _, suffix = host.partition(".")
    return f"https://{suffix or host}/.default"


class KeyVaultClient:
    """
    The internal Key Vault client.

    Calls may be made concurrently from multiple threads: each thread gets
    its own HTTP session, and token acquisition is delegated to the
    (thread-safe) azure-identity credential.
    """

    def __init__(self, vault_url: str, credential: TokenCredential) -> None:
        """Initialize the client"""
        self.url = vault_url.rstrip("/")
        self.scope = vault_scope(vault_url)
        self._credential = credential
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(
                {
                    "Content-Type": "application/json",
                    "User-Agent": USER_AGENT,
                }
            )
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        """
        Terminates every underlying network session.
        """
        with self._sessions_lock:
            for session in self._sessions:
                session.close()
            self._sessions.clear()

    def _authorization(
        self, auth_error: Type[Error], network_error: Type[Error]
    ) -> Dict[str, str]:
        try:
            token = self._credential.get_token(self.scope)
        except ClientAuthenticationError as exc:
            raise auth_error(
                f"unable to acquire a token for {self.scope}: {exc}"
            ) from exc
        except AzureError as exc:
            # e.g. `ServiceRequestError` when the identity provider is unreachable.
            raise network_error(
                f"unable to reach the identity provider for {self.scope}: {exc}"
            ) from exc
        return {"Authorization": f"Bearer {token.token}"}

    def get_certificate(self, name: str) -> KeyVaultCertificateBundle:
        """
        Fetch the latest version of the named certificate.
        """
        url = f"{self.url}/certificates/{quote(name, safe='')}"
        _logger.debug(f"Retrieving certificate {name!r} from {self.url}")

        try:
            resp: requests.Response = self.session.get(
                url,
                params={"api-version": API_VERSION},
                headers=self._authorization(RemoteAuthError, NetworkError),
                timeout=CLIENT_TIMEOUT,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise NetworkError from exc
        except requests.RequestException as exc:
            raise RemoteConfigurationError(f"certificate request failed: {exc}") from exc

        try:
            resp.raise_for_status()
        except requests.HTTPError as http_error:
            if resp.status_code in (401, 403):
                raise RemoteAuthError(
                    f"access to certificate {name!r} was denied (code={resp.status_code})"
                ) from http_error
            elif resp.status_code == 404:
                raise RemoteConfigurationError(
                    f"certificate {name!r} was not found in {self.url}"
                ) from http_error
            raise RemoteConfigurationError(
                f"certificate request failed (code={resp.status_code})"
            ) from http_error

        try:
            return KeyVaultCertificateBundle.model_validate(resp.json())
        except (ValidationError, ValueError) as exc:
            raise RemoteConfigurationError(
                f"Key Vault returned a malformed certificate bundle: {exc}"
            )

    def sign(self, kid: str, algorithm: str, digest: bytes) -> bytes:
        """
        Sign a precomputed digest with the remote key `kid`.
        """
        url = f"{kid.rstrip('/')}/sign"
        payload = {"alg": algorithm, "value": b64url_encode(digest)}

        try:
            resp: requests.Response = self.session.post(
                url,
                params={"api-version": API_VERSION},
                json=payload,
                headers=self._authorization(
                    KeyVaultSigningError, KeyVaultSigningError
                ),
                timeout=CLIENT_TIMEOUT,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise KeyVaultSigningError(f"remote sign operation failed: {exc}") from exc

        try:
            result = _KeyOperationResult.model_validate(resp.json())
        except (ValidationError, ValueError) as exc:
            raise KeyVaultSigningError(
                f"Key Vault returned a malformed sign result: {exc}"
            )

        return b64decode(result.value)


_RSA_ALGORITHMS = {
    HashAlgorithm.SHA256: "RS256",
    HashAlgorithm.SHA384: "RS384",
    HashAlgorithm.SHA512: "RS512",
}

_EC_ALGORITHMS = {
    "secp256r1": "ES256",
    "secp384r1": "ES384",
    "secp521r1": "ES512",
    "secp256k1": "ES256K",
}


class RemoteSigningKey:
    """
    An opaque handle to a private key that lives in Key Vault.

    The handle is shared by reference between every signing worker and
    performs no local locking.
    """

    def __init__(
        self, client: KeyVaultClient, key_id: str, public_key: PublicKey
    ) -> None:
        self._client = client
        self.key_id = key_id
        self.public_key = public_key

    def signature_algorithm(self, hash_algorithm: HashAlgorithm) -> str:
        """
        Returns the Key Vault signature algorithm for this key and digest.
        """
        if isinstance(self.public_key, rsa.RSAPublicKey):
            # Key Vault has no PKCS#1 SHA-1 algorithm; the DigestInfo
            # is built locally and signed raw.
            return _RSA_ALGORITHMS.get(hash_algorithm, "RSNULL")

        curve = self.public_key.curve.name
        try:
            return _EC_ALGORITHMS[curve]
        except KeyError:
            raise KeyVaultSigningError(f"unsupported key curve: {curve}")

    def sign_digest(self, digest: bytes, hash_algorithm: HashAlgorithm) -> bytes:
        """
        Signs `digest`, which was computed with `hash_algorithm`.

        RSA signatures are PKCS#1 v1.5; ECDSA signatures are returned
        DER-encoded.
        """
        algorithm = self.signature_algorithm(hash_algorithm)
        value = digest
        if algorithm == "RSNULL":
            value = hash_algorithm.digest_info_prefix + digest

        _logger.debug(f"Signing {len(digest)}-byte digest with {algorithm}")
        signature = self._client.sign(self.key_id, algorithm, value)

        if isinstance(self.public_key, ec.EllipticCurvePublicKey):
            half = len(signature) // 2
            r = int.from_bytes(signature[:half], "big")
            s = int.from_bytes(signature[half:], "big")
            return encode_dss_signature(r, s)
        return signature

    def close(self) -> None:
        self._client.close()
