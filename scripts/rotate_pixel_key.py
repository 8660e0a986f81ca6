from __future__ import annotations

import argparse
import asyncio
import sys

from cvrelay.core.logging import configure_logging
from cvrelay.persistence.db import SessionLocal
from cvrelay.services.security import KeyRotationManager, ShopifyWebPixelPublisher


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rotate the pixel encryption key and push it to the web pixel")
    parser.add_argument("--api-host", default=None, help="override the api_host pushed with the key")
    return parser


async def _rotate(api_host: str | None) -> int:
    manager = KeyRotationManager(SessionLocal, ShopifyWebPixelPublisher(SessionLocal), api_host=api_host)
    key = await manager.rotate()
    print("Pixel key rotated:")
    print(f"  kid: {key.kid}")
    print(f"  created_at: {key.created_at.isoformat()}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_rotate(args.api_host))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"rotate_pixel_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
