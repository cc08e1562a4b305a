# *-* coding: utf-8 *-*
"""ppksign error types."""

__all__ = [
    "PPKSignError",
    "TokenError",
    "TokenNotPresent",
    "AuthenticationFailed",
    "TokenLocked",
    "NoSuchKey",
    "EncodingError",
    "SignatureSizeMismatch",
    "PDFError",
    "MalformedPDF",
    "InvalidByteRange",
    "SignatureTooLarge",
]


class PPKSignError(Exception):
    """Base error for ppksign operations."""


class TokenError(PPKSignError):
    """PKCS#11 token, session or PIN failure."""


class TokenNotPresent(TokenError):
    """No token in the requested slot, or no slot with the given label."""


class AuthenticationFailed(TokenError):
    """The token rejected the PIN."""


class TokenLocked(TokenError):
    """The PIN is blocked on the token."""


class NoSuchKey(TokenError):
    """No certificate or private key object matches the request."""


class EncodingError(PPKSignError, ValueError):
    """Malformed certificate or ASN.1 assembly failure."""


class SignatureSizeMismatch(EncodingError):
    """The signer returned a value that does not match the key modulus."""


class PDFError(PPKSignError, ValueError):
    """PDF structure or signature embedding error."""


class MalformedPDF(PDFError):
    """The catalog, trailer or cross reference section cannot be located."""


class InvalidByteRange(PDFError):
    """The given byte range does not point at a reserved signature gap."""


class SignatureTooLarge(PDFError):
    """The encoded signature does not fit the reserved /Contents gap."""
