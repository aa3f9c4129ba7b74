"""
Verification of Firebase ID tokens, the fallback credential accepted by the
authentication guards.

Tokens are RS256 signed by Google. The signing certificates are published as a
``kid -> PEM`` map and cached for as long as the ``Cache-Control`` header of the
certificate endpoint allows.
"""

import re

from datetime import datetime
from typing import Dict, Optional, Protocol

import httpx
import logfire

from fastapi import Request
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError
from pydantic import BaseModel

from security.errors import IdentityProviderError
from utils.clock import epoch_seconds, from_epoch

GOOGLE_CERTS_URL = (
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
)
ISSUER_PREFIX = "https://securetoken.google.com/"
ALGORITHM = "RS256"
DEFAULT_CERT_CACHE_SECONDS = 3600

_MAX_AGE_PATTERN = re.compile(r"max-age=(\d+)")


class ExternalIdentity(BaseModel):
    """Subject verified by the identity provider."""

    subject: str
    email: Optional[str] = None
    email_verified: bool = False
    expires_at: datetime


class IdentityProvider(Protocol):
    async def verify_external_token(self, token: str) -> ExternalIdentity: ...


class FirebaseTokenVerifier:
    """Verifies Firebase ID tokens for a single project.

    Args:
        project_id (Optional[str]): Firebase project id. Without it every
            verification fails, which disables the fallback path.
        http_client (httpx.AsyncClient): Client used to fetch the certificates.
        certs_url (str, optional): Certificate endpoint. Defaults to Google's.
    """

    def __init__(
        self,
        project_id: Optional[str],
        http_client: httpx.AsyncClient,
        certs_url: str = GOOGLE_CERTS_URL,
    ):
        self.project_id = project_id
        self.http_client = http_client
        self.certs_url = certs_url
        self._certs: Dict[str, str] = {}
        self._certs_expire_at = 0

    @property
    def enabled(self) -> bool:
        return bool(self.project_id)

    async def _get_certificates(self) -> Dict[str, str]:
        if self._certs and epoch_seconds() < self._certs_expire_at:
            return self._certs

        try:
            response = await self.http_client.get(self.certs_url)
            response.raise_for_status()
            certs = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logfire.error(f"Failed to fetch identity provider certificates: {str(e)}")
            raise IdentityProviderError("Identity provider certificates unavailable") from e

        match = _MAX_AGE_PATTERN.search(response.headers.get("Cache-Control", ""))
        max_age = int(match.group(1)) if match else DEFAULT_CERT_CACHE_SECONDS

        self._certs = {str(kid): str(pem) for kid, pem in certs.items()}
        self._certs_expire_at = epoch_seconds() + max_age

        logfire.debug(f"Cached {len(self._certs)} identity provider certificates for {max_age}s")
        return self._certs

    async def verify_external_token(self, token: str) -> ExternalIdentity:
        """Verify a Firebase ID token.

        Args:
            token (str): The raw ID token.

        Raises:
            IdentityProviderError: Raised when the provider is not configured
                or the token is invalid, expired or signed by an unknown key.

        Returns:
            ExternalIdentity: The verified subject, email and expiry.
        """
        if not self.enabled:
            raise IdentityProviderError("Identity provider is not configured")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise IdentityProviderError("Malformed identity token") from e

        if header.get("alg") != ALGORITHM:
            raise IdentityProviderError("Unexpected identity token algorithm")

        certificate = (await self._get_certificates()).get(header.get("kid", ""))
        if certificate is None:
            raise IdentityProviderError("Identity token signed by an unknown key")

        try:
            claims = jwt.decode(
                token,
                certificate,
                algorithms=[ALGORITHM],
                audience=self.project_id,
                issuer=f"{ISSUER_PREFIX}{self.project_id}",
            )
        except ExpiredSignatureError as e:
            raise IdentityProviderError("Identity token has expired") from e
        except JWTClaimsError as e:
            raise IdentityProviderError(f"Invalid identity token claims: {str(e)}") from e
        except JWTError as e:
            raise IdentityProviderError("Invalid identity token") from e

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise IdentityProviderError("Identity token has no subject")

        expires_at = claims.get("exp")
        if not isinstance(expires_at, (int, float)):
            raise IdentityProviderError("Identity token has no expiry")

        return ExternalIdentity(
            subject=subject,
            email=claims.get("email"),
            email_verified=claims.get("email_verified") is True,
            expires_at=from_epoch(expires_at),
        )


def get_identity_provider(request: Request) -> IdentityProvider:
    """Get the identity provider verifier wired at startup."""
    return request.app.state.identity_provider
