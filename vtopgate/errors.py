"""
Exception hierarchy for portal access.

Transient (retried inside the login loop):
    TransportError, DecodeError, ChallengeNotFound, CaptchaMismatch

Terminal (propagated to the caller, session invalidated):
    CredentialError, Exhausted, TokenExtractionError

Startup:
    CaptchaModelError
"""

from __future__ import annotations


class PortalError(Exception):
    """Base exception for VTOP portal access errors."""

    retryable: bool = False


class TransportError(PortalError):
    """Network failure, timeout or non-2xx response from the portal."""

    retryable = True


class DecodeError(PortalError):
    """Captcha image absent, malformed, or of the wrong resolution."""

    retryable = True


class ChallengeNotFound(PortalError):
    """Login page did not carry a usable image captcha and token."""

    retryable = True


class CaptchaMismatch(PortalError):
    """Portal rejected the captcha guess."""

    retryable = True


class CredentialError(PortalError):
    """Portal rejected the login id / password. Never retried."""


class Exhausted(PortalError):
    """All login retry budgets consumed."""


class TokenExtractionError(PortalError):
    """Login succeeded but the student id or csrf token could not be found."""


class CaptchaModelError(PortalError):
    """Captcha templates or classifier weights missing or malformed."""
