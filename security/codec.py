"""Compact signed token encoding for session tokens.

A token is ``header.payload.signature`` where each part is base64url encoded
and the signature is HMAC-SHA256 over ``header.payload`` keyed with the server
secret. The secret never appears in the token.
"""

import hmac
import json

from jose import jwk
from jose.constants import ALGORITHMS
from jose.utils import base64url_decode, base64url_encode
from pydantic import ValidationError

from schema.security import TokenPayload
from security.errors import InvalidSignature, MalformedToken
from utils.settings import validate_secret

TOKEN_SEPARATOR = "."

_HEADER = {"alg": ALGORITHMS.HS256, "typ": "JWT"}


def _encode_segment(data: bytes) -> str:
    return base64url_encode(data).decode("ascii")


class TokenCodec:
    """Signs and verifies ``TokenPayload`` values.

    Args:
        secret (str): Server wide signing secret, at least 32 bytes.

    Raises:
        ConfigurationError: Raised when the secret is absent or too short.
    """

    def __init__(self, secret: str):
        self._key = jwk.construct(validate_secret(secret), algorithm=ALGORITHMS.HS256)
        self._encoded_header = _encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode("utf-8")
        )

    def _signature(self, signing_input: str) -> str:
        return _encode_segment(self._key.sign(signing_input.encode("ascii")))

    def sign(self, payload: TokenPayload) -> str:
        """Serializes and signs ``payload``.

        Args:
            payload (TokenPayload): The claims to encode.

        Returns:
            str: The compact token string.
        """
        encoded_payload = _encode_segment(
            payload.model_dump_json(by_alias=True).encode("utf-8")
        )
        signing_input = f"{self._encoded_header}{TOKEN_SEPARATOR}{encoded_payload}"

        return f"{signing_input}{TOKEN_SEPARATOR}{self._signature(signing_input)}"

    def verify(self, token: str) -> TokenPayload:
        """Checks the signature of ``token`` and decodes its claims.

        Expiry is not checked here, see ``TokenService.verify_token``.

        Args:
            token (str): The compact token string.

        Raises:
            MalformedToken: Raised when the token does not have three parts or
                its payload cannot be decoded.
            InvalidSignature: Raised when the signature does not match.

        Returns:
            TokenPayload: The decoded claims.
        """
        if not isinstance(token, str):
            raise MalformedToken("Token must be a string")

        parts = token.split(TOKEN_SEPARATOR)
        if len(parts) != 3:
            raise MalformedToken("Invalid token format")

        encoded_header, encoded_payload, signature = parts

        try:
            expected = self._signature(f"{encoded_header}{TOKEN_SEPARATOR}{encoded_payload}")
        except UnicodeEncodeError:
            raise MalformedToken("Token contains non ASCII characters")

        # Compare the encoded form so every character of the signature counts
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
            raise InvalidSignature("Invalid token signature")

        try:
            claims = json.loads(base64url_decode(encoded_payload.encode("ascii")))
            return TokenPayload.model_validate(claims)
        except (ValueError, ValidationError) as e:
            raise MalformedToken(f"Invalid token payload: {e}")
