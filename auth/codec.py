"""
auth/codec.py -- Compact signed token encoding (JWS, HS256).

Wire format:
    base64url(header_json) "." base64url(payload_json) "." base64url(hmac_sha256)
with no padding characters. The header is always {"alg":"HS256","typ":"JWT"}.

Security design decisions:
  Signature first: decode() checks the HMAC over the raw segment bytes before
       parsing either JSON document. Any change to a signed byte therefore
       surfaces as InvalidSignature, never as a parse error, and nothing
       attacker-controlled is interpreted before authentication.

  No algorithm negotiation: the header's "alg" field is never used to pick a
       verification routine. Every token is checked with the one HMAC key
       built at construction, which closes the alg=none / RS-vs-HS confusion
       class of attacks.

  Constant time: jose's HMACKey.verify compares digests with
       hmac.compare_digest, so timing does not depend on how many bytes match.

The codec knows nothing about claim meaning -- see auth/tokens.py for that.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from jose import jwk, jws
from jose.constants import ALGORITHMS
from jose.utils import base64url_decode, base64url_encode

from auth.errors import InvalidSignature, MalformedToken

logger = logging.getLogger("haven.auth.codec")

ALGORITHM = ALGORITHMS.HS256

# Unpadded base64url. Padding, whitespace and any other character make the
# token malformed, so each token has exactly one accepted spelling.
_SEGMENT = re.compile(r"[A-Za-z0-9_-]+")


class TokenCodec:
    """Encodes claim mappings into signed tokens and decodes them back.

    The secret is held only inside the jose key object; it is never logged.
    """

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._secret_key = secret_key
        self._key = jwk.construct(secret_key, algorithm=ALGORITHM)

    def __repr__(self) -> str:
        return f"TokenCodec(algorithm={ALGORITHM!r})"

    def encode(self, claims: dict[str, Any]) -> str:
        """Serialize and sign a claim mapping."""
        return jws.sign(claims, self._secret_key, algorithm=ALGORITHM)

    def decode(self, token: str) -> dict[str, Any]:
        """Verify a token and return its claim mapping.

        Raises:
            MalformedToken:   not three non-empty dot-separated parts, a part
                              holds anything but unpadded base64url, the
                              signature is not in canonical form, or a
                              verified segment is not a JSON object.
            InvalidSignature: the HMAC does not match the signed segments.
        """
        if not isinstance(token, str) or not token.isascii():
            raise MalformedToken()
        parts = token.split(".")
        if len(parts) != 3 or not all(_SEGMENT.fullmatch(part) for part in parts):
            raise MalformedToken()
        header_b64, payload_b64, signature_b64 = parts

        try:
            signature = base64url_decode(signature_b64.encode("ascii"))
        except ValueError as exc:
            raise MalformedToken() from exc
        # Non-zero trailing bits decode to the same bytes; only the canonical form is accepted
        if base64url_encode(signature).decode("ascii") != signature_b64:
            raise MalformedToken()

        signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
        if not self._key.verify(signing_input, signature):
            raise InvalidSignature()

        header = _load_segment(header_b64)
        if header.get("alg") != ALGORITHM:
            # Signed with our key, so it came from us or from someone holding
            # the secret. Verification already used HMAC regardless.
            logger.debug("Token header declares alg=%r; verified as %s", header.get("alg"), ALGORITHM)
        return _load_segment(payload_b64)


def _load_segment(segment: str) -> dict[str, Any]:
    try:
        value = json.loads(base64url_decode(segment.encode("ascii")))
    except ValueError as exc:
        # binascii.Error, UnicodeDecodeError and JSONDecodeError are all ValueErrors
        raise MalformedToken() from exc
    if not isinstance(value, dict):
        raise MalformedToken()
    return value
