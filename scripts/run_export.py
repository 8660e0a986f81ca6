from __future__ import annotations

import asyncio

from cvrelay.core.logging import configure_logging
from cvrelay.persistence.db import SessionLocal
from cvrelay.services.export import ConversionExporter


async def export() -> int:
    summary = await ConversionExporter(SessionLocal).run()
    if summary.aborted_reason:
        print(f"export_aborted reason={summary.aborted_reason}")
        return 1
    for result in summary.accounts:
        print(
            f"account={result.account_id} network={result.network_type} status={result.status} "
            f"rows={result.row_count} aged_out={result.aged_out} file={result.file_name or ''}"
        )
    failed = any(result.status == "failed" for result in summary.accounts)
    return 1 if failed else 0


if __name__ == "__main__":
    configure_logging()
    raise SystemExit(asyncio.run(export()))
