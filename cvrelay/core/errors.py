from __future__ import annotations


class CvRelayError(Exception):
    """Base error for cvrelay."""


class KeyRotationError(CvRelayError):
    """Pixel key rotation did not complete; the new key was rolled back."""


class PixelConfigPushError(CvRelayError):
    """The pixel configuration could not be updated with a new public key."""


class OrderLookupError(CvRelayError):
    """Order system request failed (transport or API error)."""


class TokenRefreshError(CvRelayError):
    """Ads OAuth token refresh failed."""


class AdsUploadError(CvRelayError):
    """Offline conversion upload rejected or failed."""

    def __init__(self, message: str, *, status_code: int | None = None, errors: list | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []
