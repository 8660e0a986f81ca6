"""Batch export of accepted conversions to the ad network.

Selection policy for one destination account at time ``now``:

* the click identifier carries the account's network prefix,
* the visit happened in ``[now - duration_days, now)``,
* the conversion happened in ``[now - conversion_window, now)``,
* the record is not processed yet.

Both windows must hold. A record whose conversion falls out of the conversion
window before any upload was accepted is never picked up again. Each pass logs
the records that aged out since the previous pass (one export interval) and
retention eventually deletes them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Literal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvrelay.core.config import get_settings
from cvrelay.core.errors import AdsUploadError, TokenRefreshError
from cvrelay.domain.models import AdAccount, AdApplication
from cvrelay.persistence.repos.ad_accounts import get_ad_application, list_ad_accounts, store_tokens
from cvrelay.persistence.repos.conversions import count_aged_out, list_exportable, mark_processed
from cvrelay.services.export.ads_api import AdsApiClient
from cvrelay.services.export.rendering import CLICK_ID_PREFIXES, prefix_for, render_batch
from cvrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

AccountStatus = Literal["uploaded", "empty", "failed", "skipped"]


@dataclass(frozen=True)
class AccountExportResult:
    account_id: int
    network_type: str
    status: AccountStatus
    row_count: int = 0
    file_name: str | None = None
    aged_out: int = 0


@dataclass
class ExportSummary:
    started_at: datetime
    token_refreshed: bool = False
    aborted_reason: str | None = None
    accounts: list[AccountExportResult] = field(default_factory=list)

    @property
    def uploaded_rows(self) -> int:
        return sum(result.row_count for result in self.accounts if result.status == "uploaded")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_complete(account: AdAccount) -> bool:
    return bool(
        account.network_type in CLICK_ID_PREFIXES
        and account.account_id
        and account.child_account_id
        and account.conversion_title
    )


class ConversionExporter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ads_client: AdsApiClient | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ads = ads_client or AdsApiClient()
        self._clock = clock or _utc_now

    async def run(self) -> ExportSummary:
        summary = ExportSummary(started_at=self._clock())
        async with self._session_factory() as session:
            application = await get_ad_application(session)
            accounts = await list_ad_accounts(session)
            if application is None:
                summary.aborted_reason = "no_ad_application"
                logger.info("export_skipped reason=no_ad_application")
                return summary
            if not accounts:
                summary.aborted_reason = "no_ad_accounts"
                logger.info("export_skipped reason=no_ad_accounts")
                return summary
            try:
                access_token = await self._access_token(session, application, summary)
            except TokenRefreshError as exc:
                summary.aborted_reason = "token_refresh_failed"
                increment_counter("export_token_refresh_failed_total")
                logger.error("export_aborted reason=token_refresh_failed error=%s", exc)
                return summary
        if not access_token:
            summary.aborted_reason = "no_access_token"
            logger.error("export_aborted reason=no_access_token")
            return summary

        # Sequential on purpose: one account's upload and logs finish before the next starts.
        for account in accounts:
            if not _is_complete(account):
                logger.warning("export_account_skipped account=%s reason=incomplete_config", account.id)
                summary.accounts.append(
                    AccountExportResult(account_id=account.id, network_type=account.network_type, status="skipped")
                )
                continue
            try:
                result = await self.export_account(account, access_token=access_token)
            except Exception:  # noqa: BLE001 - one account must never stop the rest of the pass.
                logger.exception("export_account_failed account=%s", account.id)
                increment_counter("export_account_failed_total")
                result = AccountExportResult(account_id=account.id, network_type=account.network_type, status="failed")
            summary.accounts.append(result)
        logger.info(
            "export_finished accounts=%s uploaded_rows=%s",
            len(summary.accounts),
            summary.uploaded_rows,
        )
        return summary

    async def _access_token(
        self,
        session: AsyncSession,
        application: AdApplication,
        summary: ExportSummary,
    ) -> str | None:
        settings = get_settings()
        if not settings.export_always_refresh_token:
            return application.access_token
        if not application.refresh_token:
            raise TokenRefreshError("no refresh token stored")
        issued = await self._ads.refresh_access_token(
            client_id=application.client_id,
            client_secret=application.client_secret,
            refresh_token=application.refresh_token,
        )
        await store_tokens(
            session,
            application,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            issued_at=self._clock(),
        )
        summary.token_refreshed = True
        return issued.access_token

    async def export_account(self, account: AdAccount, *, access_token: str) -> AccountExportResult:
        settings = get_settings()
        now = self._clock()
        prefix = prefix_for(account.network_type)
        visited_from = now - timedelta(days=account.duration_days)
        converted_from = now - timedelta(minutes=settings.export_conversion_window_minutes)

        async with self._session_factory() as session:
            records = await list_exportable(
                session,
                prefix=prefix,
                visited_from=visited_from,
                converted_from=converted_from,
                now=now,
            )
            aged_out = await count_aged_out(
                session,
                prefix=prefix,
                converted_before=converted_from,
                converted_since=converted_from - timedelta(minutes=settings.export_interval_minutes),
                visited_from=visited_from,
            )
        if aged_out:
            logger.warning(
                "export_records_aged_out account=%s network=%s count=%s",
                account.id,
                account.network_type,
                aged_out,
            )
        if not records:
            logger.info("export_account_empty account=%s network=%s", account.id, account.network_type)
            return AccountExportResult(
                account_id=account.id,
                network_type=account.network_type,
                status="empty",
                aged_out=aged_out,
            )

        batch = render_batch(
            records,
            network_type=account.network_type,
            conversion_title=account.conversion_title,
            now=now,
        )
        try:
            await self._ads.upload_conversions(
                network_type=account.network_type,
                account_id=account.account_id,
                child_account_id=account.child_account_id,
                access_token=access_token,
                file_name=batch.file_name,
                content=batch.content,
            )
        except AdsUploadError as exc:
            # Nothing is marked; the same records are offered again next pass while still in window.
            logger.warning(
                "export_upload_failed account=%s file=%s status=%s errors=%s",
                account.id,
                batch.file_name,
                exc.status_code,
                len(exc.errors),
            )
            increment_counter("export_upload_failed_total")
            return AccountExportResult(
                account_id=account.id,
                network_type=account.network_type,
                status="failed",
                row_count=batch.row_count,
                file_name=batch.file_name,
                aged_out=aged_out,
            )

        async with self._session_factory() as session:
            marked = await mark_processed(session, [record.id for record in records])
        increment_counter("export_rows_uploaded_total", marked)
        logger.info(
            "export_uploaded account=%s file=%s rows=%s marked=%s",
            account.id,
            batch.file_name,
            batch.row_count,
            marked,
        )
        return AccountExportResult(
            account_id=account.id,
            network_type=account.network_type,
            status="uploaded",
            row_count=batch.row_count,
            file_name=batch.file_name,
            aged_out=aged_out,
        )
