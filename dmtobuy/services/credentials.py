"""
Credential Service - owns the lifecycle of merchants' messaging tokens.

Every pipeline unit asks ``get_valid_credential`` for a usable token. Tokens
close to expiry are exchanged here, at most once per merchant at a time:
concurrent callers share a single in-flight refresh task.
"""

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from uuid import UUID

from structlog import get_logger

from dmtobuy.exceptions import NotConnectedError, ReauthRequiredError
from dmtobuy.models.api import AuthVariant
from dmtobuy.models.domain import Credential
from dmtobuy.observability import metrics
from dmtobuy.services.meta_graph import MetaGraphClient
from dmtobuy.services.repositories import CredentialRepository

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CredentialService:
    """
    Store and refresh messaging credentials.

    Usage:
        service = CredentialService(repository, graph_client)
        credential = await service.get_valid_credential(merchant_id)
    """

    def __init__(
        self,
        repository: CredentialRepository,
        graph_client: MetaGraphClient,
        refresh_window: timedelta = timedelta(days=7),
        clock: Clock | None = None,
    ) -> None:
        self.repository = repository
        self.graph_client = graph_client
        self.refresh_window = refresh_window
        self._clock = clock or _utc_now
        self._inflight: dict[UUID, asyncio.Task[Credential]] = {}

    async def get_valid_credential(self, merchant_id: UUID) -> Credential:
        """
        Return a usable credential, refreshing it first when it is near expiry.

        Raises:
            NotConnectedError: No credential on file
            ReauthRequiredError: Credential is marked invalid or the exchange was rejected
            TemporarilyUnavailableError: Exchange failed transiently
        """
        credential = await self._load(merchant_id)
        if not credential.needs_refresh(self._clock(), self.refresh_window):
            return credential
        return await self._refresh_single_flight(merchant_id)

    async def force_refresh(self, merchant_id: UUID) -> Credential:
        """Exchange the token regardless of expiry (after the provider rejected it)."""
        await self._load(merchant_id)
        return await self._refresh_single_flight(merchant_id, force=True)

    async def _load(self, merchant_id: UUID) -> Credential:
        credential = await self.repository.get(merchant_id)
        if credential is None:
            raise NotConnectedError(merchant_id)
        if not credential.is_valid:
            raise ReauthRequiredError(merchant_id, "credential marked invalid")
        return credential

    async def _refresh_single_flight(self, merchant_id: UUID, force: bool = False) -> Credential:
        task = self._inflight.get(merchant_id)
        if task is None:
            task = asyncio.create_task(self._refresh(merchant_id, force))
            self._inflight[merchant_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(merchant_id, None))
        else:
            logger.debug("credential_refresh_joined", merchant_id=str(merchant_id))
        # A cancelled caller must not cancel the refresh other callers wait on.
        return await asyncio.shield(task)

    async def _refresh(self, merchant_id: UUID, force: bool) -> Credential:
        # Re-read: another worker may already have stored a fresh token.
        credential = await self._load(merchant_id)
        now = self._clock()
        if not force and not credential.needs_refresh(now, self.refresh_window):
            return credential

        logger.info(
            "credential_refresh_started",
            merchant_id=str(merchant_id),
            auth_variant=credential.auth_variant.value,
        )
        try:
            grant = await self.graph_client.exchange_token(credential)
        except ReauthRequiredError as exc:
            await self.repository.mark_invalid(merchant_id, exc.reason)
            metrics.record_token_refresh(credential.auth_variant.value, "reauth_required")
            logger.warning("credential_reauth_required", merchant_id=str(merchant_id))
            raise ReauthRequiredError(merchant_id, exc.reason) from exc
        except Exception:
            metrics.record_token_refresh(credential.auth_variant.value, "failed")
            raise

        expires_at = now + timedelta(seconds=grant.expires_in) if grant.expires_in else None
        refreshed = replace(credential, access_token=grant.access_token, expires_at=expires_at)
        await self.repository.save(refreshed)
        metrics.record_token_refresh(credential.auth_variant.value, "refreshed")
        logger.info(
            "credential_refreshed",
            merchant_id=str(merchant_id),
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return refreshed

    # ========================================================================
    # Administration
    # ========================================================================

    async def connect(
        self,
        merchant_id: UUID,
        auth_variant: AuthVariant,
        business_account_id: str,
        access_token: str,
        page_id: str | None = None,
        expires_in: int | None = None,
    ) -> Credential:
        """Store a credential handed over by the OAuth flow."""
        expires_at = self._clock() + timedelta(seconds=expires_in) if expires_in else None
        credential = Credential(
            merchant_id=merchant_id,
            business_account_id=business_account_id,
            access_token=access_token,
            auth_variant=auth_variant,
            page_id=page_id,
            expires_at=expires_at,
        )
        await self.repository.save(credential)
        logger.info(
            "credential_connected",
            merchant_id=str(merchant_id),
            auth_variant=auth_variant.value,
            business_account_id=business_account_id,
        )
        return credential

    async def get_connection(self, merchant_id: UUID) -> Credential | None:
        """Stored credential as-is, for status display. No refresh."""
        return await self.repository.get(merchant_id)

    async def disconnect(self, merchant_id: UUID) -> bool:
        deleted = await self.repository.delete(merchant_id)
        logger.info("credential_disconnected", merchant_id=str(merchant_id), deleted=deleted)
        return deleted

    async def refresh_expiring(self, limit: int = 100) -> tuple[int, int, int]:
        """
        Proactively refresh credentials expiring inside the window.

        Returns:
            (checked, refreshed, failed)
        """
        cutoff = self._clock() + self.refresh_window
        candidates = await self.repository.list_expiring(cutoff, limit)
        refreshed = failed = 0
        for credential in candidates:
            try:
                await self._refresh_single_flight(credential.merchant_id)
                refreshed += 1
            except (NotConnectedError, ReauthRequiredError) as exc:
                failed += 1
                logger.warning(
                    "credential_sweep_skipped",
                    merchant_id=str(credential.merchant_id),
                    error=str(exc),
                )
            except Exception as exc:
                failed += 1
                logger.error(
                    "credential_sweep_failed",
                    merchant_id=str(credential.merchant_id),
                    error=str(exc),
                    exc_info=True,
                )
        logger.info(
            "credential_sweep_complete",
            checked=len(candidates),
            refreshed=refreshed,
            failed=failed,
        )
        return len(candidates), refreshed, failed
