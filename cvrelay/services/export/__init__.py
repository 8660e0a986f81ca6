from cvrelay.services.export.ads_api import AdsApiClient, IssuedTokens
from cvrelay.services.export.exporter import AccountExportResult, ConversionExporter, ExportSummary
from cvrelay.services.export.rendering import CLICK_ID_PREFIXES, RenderedBatch, render_batch

__all__ = [
    "AccountExportResult",
    "AdsApiClient",
    "CLICK_ID_PREFIXES",
    "ConversionExporter",
    "ExportSummary",
    "IssuedTokens",
    "RenderedBatch",
    "render_batch",
]
