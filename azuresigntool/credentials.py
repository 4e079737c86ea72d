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
API for resolving Azure Key Vault credentials into a signing identity.

Example:

```python
from azuresigntool.credentials import ManagedIdentity, materialize

with materialize(
    "https://my-vault.vault.azure.net", "my-certificate", ManagedIdentity()
) as materialized:
    print(materialized.certificate.subject)
```
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import urlparse

import jwt
from azure.core.credentials import AccessToken as AzureAccessToken
from azure.core.credentials import TokenCredential
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from typing_extensions import TypeAlias

from azuresigntool._internal.keyvault import KeyVaultClient, RemoteSigningKey
from azuresigntool.errors import ConfigurationError, RemoteConfigurationError

_logger = logging.getLogger(__name__)

# Identifiers accepted by `--azure-authority`, and their Entra ID hosts.
AUTHORITY_HOSTS = {
    "AzureChinaCloud": "login.chinacloudapi.cn",
    "AzureGermanyCloud": "login.microsoftonline.de",
    "AzureGovernment": "login.microsoftonline.us",
    "AzurePublicCloud": "login.microsoftonline.com",
}

_OPAQUE_TOKEN_LIFETIME = 3600

# The characters azure-identity accepts in a tenant ID.
_TENANT_ID_PATTERN = re.compile(r"[A-Za-z0-9.-]+")


@dataclass(frozen=True)
class AccessToken:
    """
    A bearer token for Key Vault, obtained by the caller.
    """

    token: str

    def __repr__(self) -> str:
        return "AccessToken(token=<redacted>)"


@dataclass(frozen=True)
class ClientSecretPrincipal:
    """
    An Entra ID application (service principal) and its client secret.
    """

    client_id: str
    client_secret: str
    tenant_id: str

    def __repr__(self) -> str:
        return (
            f"ClientSecretPrincipal(client_id={self.client_id!r}, "
            f"client_secret=<redacted>, tenant_id={self.tenant_id!r})"
        )


@dataclass(frozen=True)
class ManagedIdentity:
    """
    The ambient, platform-issued identity of the current host.
    """


ResolvedCredential: TypeAlias = Union[AccessToken, ClientSecretPrincipal, ManagedIdentity]


def resolve_credential(
    *,
    access_token: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    tenant_id: Optional[str] = None,
    managed_identity: bool = False,
) -> ResolvedCredential:
    """
    Resolves exactly one credential from mutually exclusive inputs.

    Raises `ConfigurationError` listing every problem with the inputs.
    No network access happens here.
    """
    problems = []

    populated = [access_token is not None, client_id is not None, managed_identity]
    if populated.count(True) != 1:
        problems.append(
            "One of '--azure-key-vault-accesstoken', '--azure-key-vault-client-id' or "
            "'--azure-key-vault-managed-identity' must be supplied."
        )

    if client_id is not None and client_secret is None:
        problems.append(
            "Must supply '--azure-key-vault-client-secret' when using "
            "'--azure-key-vault-client-id'."
        )

    if client_id is not None and tenant_id is None:
        problems.append(
            "Must supply '--azure-key-vault-tenant-id' when using "
            "'--azure-key-vault-client-id'."
        )
    elif tenant_id is not None and not _TENANT_ID_PATTERN.fullmatch(tenant_id):
        problems.append(
            f"'{tenant_id}' is not a valid value for '--azure-key-vault-tenant-id'."
        )

    if managed_identity and (access_token is not None or client_id is not None):
        problems.append(
            "Cannot use '--azure-key-vault-managed-identity' and "
            "'--azure-key-vault-accesstoken' or '--azure-key-vault-client-id'."
        )

    ConfigurationError.collect(problems)

    if access_token is not None:
        return AccessToken(access_token)
    elif client_id is not None:
        # Checked above; narrows the types for mypy.
        assert client_secret is not None and tenant_id is not None
        return ClientSecretPrincipal(client_id, client_secret, tenant_id)
    else:
        return ManagedIdentity()


def resolve_authority(identifier: Optional[str]) -> Optional[str]:
    """
    Returns the authority host for an `--azure-authority` identifier
    (compared case-insensitively), or `None` if no identifier was given.
    """
    if identifier is None:
        return None

    for name, host in AUTHORITY_HOSTS.items():
        if name.lower() == identifier.lower():
            return host

    raise ConfigurationError(
        f"'{identifier}' is not a valid value for '--azure-authority'. "
        f"Allowed values are [{', '.join(AUTHORITY_HOSTS)}]."
    )


def validate_vault_url(vault_url: Optional[str]) -> str:
    """
    Checks that `vault_url` is an absolute HTTPS URL.
    """
    if vault_url is None:
        raise ConfigurationError("--azure-key-vault-url is required.")

    parsed = urlparse(vault_url)
    if parsed.scheme != "https" or not parsed.hostname:
        raise ConfigurationError(
            f"'{vault_url}' is not a valid value for '--azure-key-vault-url'. "
            "An absolute https:// URL is required."
        )
    return vault_url


class StaticTokenCredential:
    """
    An azure-core `TokenCredential` over a caller-supplied access token.

    The token is never refreshed. Its expiry is taken from the (unverified)
    JWT `exp` claim; opaque tokens are assumed to be valid for an hour.
    """

    def __init__(self, token: str) -> None:
        self._token = token
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
            self._expires_on = int(claims["exp"])
        except (jwt.PyJWTError, KeyError, TypeError, ValueError):
            _logger.debug("access token has no readable expiry; assuming one hour")
            self._expires_on = int(time.time()) + _OPAQUE_TOKEN_LIFETIME

    def get_token(self, *scopes: str, **kwargs: Any) -> AzureAccessToken:
        return AzureAccessToken(self._token, self._expires_on)

    def close(self) -> None:
        pass


def token_credential(
    credential: ResolvedCredential, authority: Optional[str] = None
) -> TokenCredential:
    """
    Returns an azure-core `TokenCredential` for the resolved credential.

    Raises `RemoteConfigurationError` if azure-identity rejects it.
    """
    kwargs = {"authority": authority} if authority is not None else {}

    if isinstance(credential, AccessToken):
        return StaticTokenCredential(credential.token)
    elif isinstance(credential, ClientSecretPrincipal):
        try:
            return ClientSecretCredential(
                credential.tenant_id,
                credential.client_id,
                credential.client_secret,
                **kwargs,
            )
        except ValueError as exc:
            raise RemoteConfigurationError(
                f"unable to create a client secret credential: {exc}"
            ) from exc
    else:
        return DefaultAzureCredential(**kwargs)


class MaterializedSigningContext:
    """
    A remote-backed signing identity: the Key Vault key handle, its public
    certificate, and the key identifier.

    Use as a context manager; the credential and every network session are
    released on exit.
    """

    def __init__(
        self,
        *,
        key: RemoteSigningKey,
        certificate: x509.Certificate,
        credential: TokenCredential,
    ) -> None:
        self.key = key
        self.certificate = certificate
        self._credential = credential

    @property
    def key_id(self) -> str:
        return self.key.key_id

    def close(self) -> None:
        self.key.close()
        close = getattr(self._credential, "close", None)
        if close is not None:
            close()

    def __enter__(self) -> MaterializedSigningContext:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def materialize(
    vault_url: str,
    certificate_name: str,
    credential: ResolvedCredential,
    *,
    authority: Optional[str] = None,
) -> MaterializedSigningContext:
    """
    Exchanges `credential` for a token and fetches the named certificate,
    producing a `MaterializedSigningContext`.

    Raises `RemoteConfigurationError` (or one of its subclasses) if the
    vault can't be reached, rejects the credential, or doesn't have a
    usable certificate.
    """
    azure_credential = token_credential(credential, authority)
    client = KeyVaultClient(vault_url, azure_credential)

    try:
        bundle = client.get_certificate(certificate_name)

        try:
            certificate = x509.load_der_x509_certificate(bundle.der)
        except ValueError as exc:
            raise RemoteConfigurationError(
                f"certificate {certificate_name!r} is not a valid X.509 certificate"
            ) from exc

        public_key = certificate.public_key()
        if not isinstance(public_key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey)):
            raise RemoteConfigurationError(
                f"certificate {certificate_name!r} has an unsupported key type"
            )
    except Exception:
        client.close()
        close = getattr(azure_credential, "close", None)
        if close is not None:
            close()
        raise

    _logger.debug(f"Materialized key {bundle.kid} for {certificate.subject.rfc4514_string()}")

    return MaterializedSigningContext(
        key=RemoteSigningKey(client, bundle.kid, public_key),
        certificate=certificate,
        credential=azure_credential,
    )
