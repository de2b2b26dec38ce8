"""
Follow-ups - one nudge for PRO customers who never opened their link.

An hourly sweep looks at DM conversations whose last customer message is
23 to 24 hours old, so the nudge still lands inside the messaging window.
Each (message, link) pair is claimed in the ledger before sending; a failed
send releases the claim and the pair is retried by the next sweep while it
is still in the window.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from dmtobuy.models.api import BrandTone, Channel
from dmtobuy.models.domain import AutomationSettings, FollowupCandidate
from dmtobuy.observability import metrics
from dmtobuy.observability.tracing import trace_operation
from dmtobuy.services.credentials import CredentialService
from dmtobuy.services.meta_graph import MetaGraphClient
from dmtobuy.services.plans import get_plan
from dmtobuy.services.repositories import (
    ContactRepository,
    FollowupRepository,
    MerchantRepository,
    SettingsRepository,
)

logger = get_logger(__name__)

FOLLOWUP_TEMPLATES = {
    BrandTone.FRIENDLY: (
        "Hi! Just checking in - did you have any questions about the product? "
        "I'm here to help!"
    ),
    BrandTone.EXPERT: (
        "Hello, I wanted to follow up on your inquiry. Please let me know if you have "
        "any questions or need additional information."
    ),
    BrandTone.CASUAL: "Hey! Just wanted to check in - any questions? Happy to help!",
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


def followup_text(settings: AutomationSettings) -> str:
    """Tone template, prefixed by the merchant's custom instruction when set."""
    voice = settings.brand_voice
    text = FOLLOWUP_TEMPLATES[voice.tone]
    instruction = (voice.custom_instruction or "").strip()
    return f"{instruction}\n\n{text}" if instruction else text


@dataclass(frozen=True)
class FollowupSummary:
    """Totals for one sweep."""

    checked: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


class FollowupService:
    """Send at most one follow-up per unclicked link."""

    def __init__(
        self,
        repository: FollowupRepository,
        merchants: MerchantRepository,
        settings_repository: SettingsRepository,
        contacts: ContactRepository,
        credentials: CredentialService,
        graph_client: MetaGraphClient,
        window_start: timedelta = timedelta(hours=24),
        window_end: timedelta = timedelta(hours=23),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if window_end >= window_start:
            raise ValueError("window_end must be more recent than window_start")
        self.repository = repository
        self.merchants = merchants
        self.settings_repository = settings_repository
        self.contacts = contacts
        self.credentials = credentials
        self.graph_client = graph_client
        self.window_start = window_start
        self.window_end = window_end
        self._clock = clock or _utc_now

    async def run(self, limit: int = 100) -> FollowupSummary:
        """Sweep the window once."""
        now = self._clock()
        candidates = await self.repository.list_candidates(
            now - self.window_start, now - self.window_end, limit
        )
        sent = skipped = failed = 0
        with trace_operation("followups.sweep", candidates=len(candidates)):
            for candidate in candidates:
                result = await self._follow_up(candidate)
                metrics.record_followup(result)
                if result == "sent":
                    sent += 1
                elif result == "failed":
                    failed += 1
                else:
                    skipped += 1
        logger.info(
            "followup_sweep_complete",
            checked=len(candidates),
            sent=sent,
            skipped=skipped,
            failed=failed,
        )
        return FollowupSummary(len(candidates), sent, skipped, failed)

    async def _eligible(self, candidate: FollowupCandidate) -> AutomationSettings | str:
        """Merchant settings when the follow-up may go out, else the skip result."""
        merchant = await self.merchants.get(candidate.merchant_id)
        if merchant is None or not merchant.is_active:
            return "skipped:merchant_inactive"
        if not get_plan(merchant.plan_tier).follow_up:
            return "skipped:plan"
        settings = await self.settings_repository.get(candidate.merchant_id)
        if settings is None or not settings.followup_enabled:
            return "skipped:disabled"
        if await self.contacts.is_opted_out(candidate.merchant_id, candidate.sender_id):
            return "skipped:opted_out"
        return settings

    async def _follow_up(self, candidate: FollowupCandidate) -> str:
        eligible = await self._eligible(candidate)
        if isinstance(eligible, str):
            logger.debug(
                "followup_skipped",
                message_id=str(candidate.message_id),
                result=eligible,
            )
            return eligible
        if not await self.repository.claim(candidate, self._clock()):
            return "skipped:claimed"

        try:
            credential = await self.credentials.get_valid_credential(candidate.merchant_id)
            receipt = await self.graph_client.send_message(
                credential, candidate.sender_id, Channel.DM, followup_text(eligible)
            )
        except Exception as exc:
            await self.repository.release(candidate)
            logger.warning(
                "followup_failed",
                merchant_id=str(candidate.merchant_id),
                message_id=str(candidate.message_id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return "failed"

        await self.repository.mark_sent(candidate, receipt.external_message_id, self._clock())
        logger.info(
            "followup_sent",
            merchant_id=str(candidate.merchant_id),
            message_id=str(candidate.message_id),
            link_id=candidate.link_id,
        )
        return "sent"
