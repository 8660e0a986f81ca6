from cvrelay.beacon.client import BeaconDeliveryError, ConversionBeacon
from cvrelay.beacon.cookies import ClickId, find_latest_click_id

__all__ = ["BeaconDeliveryError", "ClickId", "ConversionBeacon", "find_latest_click_id"]
