from cvrelay.services.security.keyring import (
    KeyRotationManager,
    KeyringConfigurationError,
    PixelKeyView,
    PrivateKeyResolver,
    current_pixel_key,
    list_pixel_keys,
)
from cvrelay.services.security.pixel_config import (
    PixelConfigPublisher,
    ShopifyWebPixelPublisher,
    build_pixel_settings,
)

__all__ = [
    "KeyRotationManager",
    "KeyringConfigurationError",
    "PixelConfigPublisher",
    "PixelKeyView",
    "PrivateKeyResolver",
    "ShopifyWebPixelPublisher",
    "build_pixel_settings",
    "current_pixel_key",
    "list_pixel_keys",
]
