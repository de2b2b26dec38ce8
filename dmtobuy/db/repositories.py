"""
PostgreSQL Repositories - SQLAlchemy implementations of the repository protocols.

Each operation opens its own short-lived session from the injected factory
and commits before returning. Uniqueness (message per event, LinkSent per
message, queue dedup key) is enforced with INSERT ... ON CONFLICT so that
concurrent deliveries of the same event collapse in the database.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import and_, any_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased
from structlog import get_logger

from dmtobuy.db.models import (
    AutomationSettingsRow,
    ContactOptOut,
    Followup,
    LinkClick,
    LinkSent,
    Merchant,
    MessageRow,
    OrderAttribution,
    ProductMappingRow,
    ShortLink,
    SocialAuth,
    WebhookEventRow,
)
from dmtobuy.exceptions import ReauthRequiredError
from dmtobuy.models.api import (
    AuthVariant,
    BrandTone,
    Channel,
    DecisionOutcome,
    LinkKind,
    PlanTier,
    QueueStatus,
    ReasonCode,
)
from dmtobuy.models.domain import (
    AutomationSettings,
    BrandVoice,
    Classification,
    ConversationTurn,
    Credential,
    FollowupCandidate,
    InboundEvent,
    LinkSentData,
    MerchantData,
    MessageRecord,
    OrderAttributionData,
    ProductMapping,
    QueuedEvent,
    WebhookItem,
)
from dmtobuy.services.token_cipher import TokenCipher, TokenDecryptionError

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class _SqlRepository:
    """Shared constructor: every repository works from a session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory


# ============================================================================
# Merchants
# ============================================================================


def _to_merchant(row: Merchant) -> MerchantData:
    return MerchantData(
        id=row.id,
        shop_domain=row.shop_domain,
        is_active=row.is_active,
        plan_tier=PlanTier(row.plan_tier),
        usage_count=row.usage_count,
        usage_period_start=row.usage_period_start,
        platform_access_token=row.platform_access_token,
    )


class SqlMerchantRepository(_SqlRepository):
    """Merchant accounts on PostgreSQL."""

    async def get(self, merchant_id: UUID) -> MerchantData | None:
        async with self._sessions() as session:
            row = await session.get(Merchant, merchant_id)
            return _to_merchant(row) if row else None

    async def get_by_business_account(self, business_account_id: str) -> MerchantData | None:
        stmt = (
            select(Merchant)
            .join(SocialAuth, SocialAuth.merchant_id == Merchant.id)
            .where(SocialAuth.business_account_id == business_account_id)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_merchant(row) if row else None

    async def get_by_shop_domain(self, shop_domain: str) -> MerchantData | None:
        stmt = select(Merchant).where(Merchant.shop_domain == shop_domain)
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_merchant(row) if row else None

    async def is_active(self, merchant_id: UUID) -> bool:
        stmt = select(Merchant.is_active).where(Merchant.id == merchant_id)
        async with self._sessions() as session:
            return bool((await session.execute(stmt)).scalar_one_or_none())

    async def install(
        self, shop_domain: str, plan_tier: PlanTier, platform_access_token: str | None
    ) -> MerchantData:
        async with self._sessions() as session:
            stmt = select(Merchant).where(Merchant.shop_domain == shop_domain).with_for_update()
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = Merchant(
                    id=uuid4(),
                    shop_domain=shop_domain,
                    is_active=True,
                    plan_tier=plan_tier.value,
                    platform_access_token=platform_access_token,
                    usage_count=0,
                )
                session.add(row)
                logger.info("merchant_installed", shop_domain=shop_domain, plan=plan_tier.value)
            else:
                row.is_active = True
                row.plan_tier = plan_tier.value
                row.uninstalled_at = None
                if platform_access_token:
                    row.platform_access_token = platform_access_token
                logger.info("merchant_reinstalled", merchant_id=str(row.id))
            await session.commit()
            return _to_merchant(row)

    async def deactivate(self, merchant_id: UUID) -> None:
        stmt = (
            update(Merchant)
            .where(Merchant.id == merchant_id)
            .values(
                is_active=False,
                plan_tier=PlanTier.FREE.value,
                uninstalled_at=_utc_now(),
                updated_at=_utc_now(),
            )
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def increment_usage(self, merchant_id: UUID, now: datetime) -> int:
        async with self._sessions() as session:
            stmt = select(Merchant).where(Merchant.id == merchant_id).with_for_update()
            row = (await session.execute(stmt)).scalar_one()
            start = row.usage_period_start
            if start is None or (start.year, start.month) != (now.year, now.month):
                row.usage_count = 1
                row.usage_period_start = now.replace(
                    day=1, hour=0, minute=0, second=0, microsecond=0
                )
            else:
                row.usage_count += 1
            await session.commit()
            return row.usage_count


# ============================================================================
# Credentials
# ============================================================================


def _to_credential(row: SocialAuth, cipher: TokenCipher) -> Credential:
    try:
        access_token = cipher.decrypt(row.access_token_enc)
    except TokenDecryptionError as exc:
        raise ReauthRequiredError(row.merchant_id, str(exc)) from exc
    return Credential(
        merchant_id=row.merchant_id,
        business_account_id=row.business_account_id,
        access_token=access_token,
        auth_variant=AuthVariant(row.auth_variant),
        page_id=row.page_id,
        expires_at=row.token_expires_at,
        is_valid=row.is_valid,
    )


class SqlCredentialRepository(_SqlRepository):
    """Messaging credentials on PostgreSQL, tokens encrypted at rest."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], cipher: TokenCipher
    ) -> None:
        super().__init__(session_factory)
        self._cipher = cipher

    async def get(self, merchant_id: UUID) -> Credential | None:
        """
        Raises:
            ReauthRequiredError: The stored token cannot be decrypted with any configured key
        """
        stmt = select(SocialAuth).where(SocialAuth.merchant_id == merchant_id)
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_credential(row, self._cipher) if row else None

    async def save(self, credential: Credential) -> None:
        now = _utc_now()
        values = {
            "page_id": credential.page_id,
            "business_account_id": credential.business_account_id,
            "access_token_enc": self._cipher.encrypt(credential.access_token),
            "token_expires_at": credential.expires_at,
            "auth_variant": credential.auth_variant.value,
            "is_valid": credential.is_valid,
            "invalid_reason": None,
            "last_refreshed_at": now,
            "updated_at": now,
        }
        stmt = (
            pg_insert(SocialAuth)
            .values(id=uuid4(), merchant_id=credential.merchant_id, created_at=now, **values)
            .on_conflict_do_update(index_elements=[SocialAuth.merchant_id], set_=values)
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def mark_invalid(self, merchant_id: UUID, reason: str) -> None:
        stmt = (
            update(SocialAuth)
            .where(SocialAuth.merchant_id == merchant_id)
            .values(is_valid=False, invalid_reason=reason[:255], updated_at=_utc_now())
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def delete(self, merchant_id: UUID) -> bool:
        stmt = delete(SocialAuth).where(SocialAuth.merchant_id == merchant_id)
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            return bool(result.rowcount)

    async def list_expiring(self, before: datetime, limit: int) -> list[Credential]:
        stmt = (
            select(SocialAuth)
            .where(
                SocialAuth.is_valid.is_(True),
                or_(SocialAuth.token_expires_at.is_(None), SocialAuth.token_expires_at <= before),
            )
            .order_by(SocialAuth.token_expires_at.asc().nulls_first())
            .limit(limit)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        credentials = []
        for row in rows:
            try:
                credentials.append(_to_credential(row, self._cipher))
            except ReauthRequiredError as exc:
                logger.warning(
                    "credential_unreadable", merchant_id=str(row.merchant_id), error=exc.reason
                )
        return credentials


# ============================================================================
# Settings and product mappings
# ============================================================================


class SqlSettingsRepository(_SqlRepository):
    """Automation settings on PostgreSQL."""

    async def get(self, merchant_id: UUID) -> AutomationSettings | None:
        async with self._sessions() as session:
            row = await session.get(AutomationSettingsRow, merchant_id)
            if row is None:
                return None
            return AutomationSettings(
                merchant_id=row.merchant_id,
                dm_automation_enabled=row.dm_automation_enabled,
                comment_automation_enabled=row.comment_automation_enabled,
                enabled_post_ids=frozenset(row.enabled_post_ids or ()),
                disabled_post_ids=frozenset(row.disabled_post_ids or ()),
                brand_voice=BrandVoice(
                    tone=BrandTone(row.tone), custom_instruction=row.custom_instruction
                ),
                followup_enabled=row.followup_enabled,
            )

    async def save(self, settings: AutomationSettings) -> None:
        values = {
            "dm_automation_enabled": settings.dm_automation_enabled,
            "comment_automation_enabled": settings.comment_automation_enabled,
            "enabled_post_ids": sorted(settings.enabled_post_ids),
            "disabled_post_ids": sorted(settings.disabled_post_ids),
            "tone": settings.brand_voice.tone.value,
            "custom_instruction": settings.brand_voice.custom_instruction,
            "followup_enabled": settings.followup_enabled,
            "updated_at": _utc_now(),
        }
        stmt = (
            pg_insert(AutomationSettingsRow)
            .values(merchant_id=settings.merchant_id, **values)
            .on_conflict_do_update(index_elements=[AutomationSettingsRow.merchant_id], set_=values)
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()


class SqlProductMappingRepository(_SqlRepository):
    """Product mappings on PostgreSQL."""

    async def get(self, merchant_id: UUID, media_id: str) -> ProductMapping | None:
        stmt = select(ProductMappingRow).where(
            ProductMappingRow.merchant_id == merchant_id,
            ProductMappingRow.media_id == media_id,
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return ProductMapping(
                merchant_id=row.merchant_id,
                media_id=row.media_id,
                product_id=row.product_id,
                variant_id=row.variant_id,
                product_handle=row.product_handle,
                variant_explicit=row.variant_explicit,
                variant_count=row.variant_count,
            )

    async def upsert(self, mapping: ProductMapping) -> None:
        values = {
            "product_id": mapping.product_id,
            "variant_id": mapping.variant_id,
            "product_handle": mapping.product_handle,
            "variant_explicit": mapping.variant_explicit,
            "variant_count": mapping.variant_count,
            "updated_at": _utc_now(),
        }
        stmt = (
            pg_insert(ProductMappingRow)
            .values(
                id=uuid4(), merchant_id=mapping.merchant_id, media_id=mapping.media_id, **values
            )
            .on_conflict_do_update(constraint="uq_product_mapping_media", set_=values)
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()


# ============================================================================
# Messages (also the reply ledger)
# ============================================================================


def _to_message(row: MessageRow) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        merchant_id=row.merchant_id,
        external_id=row.external_id,
        channel=Channel(row.channel),
        sender_id=row.sender_id,
        text=row.text,
        created_at=row.created_at,
        outcome=DecisionOutcome(row.outcome) if row.outcome else None,
        reason=ReasonCode(row.reason) if row.reason else None,
        replied_at=row.replied_at,
    )


class SqlMessageRepository(_SqlRepository):
    """Message log on PostgreSQL."""

    async def record_inbound(
        self, merchant_id: UUID, event: InboundEvent
    ) -> tuple[MessageRecord, bool]:
        stmt = (
            pg_insert(MessageRow)
            .values(
                id=uuid4(),
                merchant_id=merchant_id,
                external_id=event.external_id,
                channel=event.channel.value,
                sender_id=event.sender_id,
                sender_username=event.sender_username,
                media_id=event.media_id,
                text=event.text,
                event_timestamp=event.timestamp,
                created_at=_utc_now(),
            )
            .on_conflict_do_nothing(constraint="uq_message_event")
            .returning(MessageRow.id)
        )
        async with self._sessions() as session:
            inserted_id = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            existing = (
                await session.execute(
                    select(MessageRow).where(
                        MessageRow.merchant_id == merchant_id,
                        MessageRow.external_id == event.external_id,
                    )
                )
            ).scalar_one()
            return _to_message(existing), inserted_id is not None

    async def attach_classification(
        self, message_id: UUID, classification: Classification, classified_at: datetime
    ) -> None:
        stmt = (
            update(MessageRow)
            .where(MessageRow.id == message_id)
            .values(
                intent=classification.intent.value,
                confidence=classification.confidence,
                sentiment=classification.sentiment.value,
                classified_at=classified_at,
            )
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def record_outcome(
        self,
        message_id: UUID,
        outcome: DecisionOutcome,
        reason: ReasonCode,
        reply_text: str | None,
        external_message_id: str | None,
        replied_at: datetime | None,
    ) -> None:
        values: dict[str, object] = {"outcome": outcome.value, "reason": reason.value}
        if replied_at is not None:
            values.update(
                reply_text=reply_text,
                external_message_id=external_message_id,
                replied_at=replied_at,
            )
        stmt = update(MessageRow).where(MessageRow.id == message_id).values(**values)
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def has_replied(self, merchant_id: UUID, external_id: str) -> bool:
        stmt = (
            select(MessageRow.replied_at, LinkSent.id)
            .outerjoin(LinkSent, LinkSent.message_id == MessageRow.id)
            .where(MessageRow.merchant_id == merchant_id, MessageRow.external_id == external_id)
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).first()
            if row is None:
                return False
            replied_at, link_sent_id = row
            return replied_at is not None or link_sent_id is not None

    async def claim_reply(self, merchant_id: UUID, external_id: str, claimed_at: datetime) -> bool:
        stmt = (
            update(MessageRow)
            .where(
                MessageRow.merchant_id == merchant_id,
                MessageRow.external_id == external_id,
                MessageRow.reply_claimed_at.is_(None),
                MessageRow.replied_at.is_(None),
            )
            .values(reply_claimed_at=claimed_at)
        )
        async with self._sessions() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def release_claim(self, merchant_id: UUID, external_id: str) -> None:
        stmt = (
            update(MessageRow)
            .where(
                MessageRow.merchant_id == merchant_id,
                MessageRow.external_id == external_id,
                MessageRow.replied_at.is_(None),
            )
            .values(reply_claimed_at=None)
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def recent_turns(
        self, merchant_id: UUID, sender_id: str, limit: int
    ) -> list[ConversationTurn]:
        stmt = (
            select(MessageRow)
            .where(MessageRow.merchant_id == merchant_id, MessageRow.sender_id == sender_id)
            .order_by(MessageRow.created_at.desc())
            .limit(limit)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()

        turns: list[ConversationTurn] = []
        for row in reversed(rows):
            channel = Channel(row.channel)
            turns.append(ConversationTurn(channel, row.text, True, row.created_at))
            if row.reply_text and row.replied_at:
                turns.append(ConversationTurn(channel, row.reply_text, False, row.replied_at))
        return turns[-limit:]

    async def count_clarifying_since(
        self, merchant_id: UUID, sender_id: str, since: datetime
    ) -> int:
        stmt = select(func.count(MessageRow.id)).where(
            MessageRow.merchant_id == merchant_id,
            MessageRow.sender_id == sender_id,
            MessageRow.outcome == DecisionOutcome.ASK_CLARIFYING.value,
            MessageRow.replied_at.is_not(None),
            MessageRow.created_at >= since,
        )
        async with self._sessions() as session:
            return int((await session.execute(stmt)).scalar_one())


class SqlContactRepository(_SqlRepository):
    """Customer opt-outs on PostgreSQL."""

    async def is_opted_out(self, merchant_id: UUID, sender_id: str) -> bool:
        stmt = select(ContactOptOut.id).where(
            ContactOptOut.merchant_id == merchant_id, ContactOptOut.sender_id == sender_id
        )
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def record_opt_out(self, merchant_id: UUID, sender_id: str) -> None:
        stmt = (
            pg_insert(ContactOptOut)
            .values(id=uuid4(), merchant_id=merchant_id, sender_id=sender_id, created_at=_utc_now())
            .on_conflict_do_nothing(constraint="uq_contact_opt_out")
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()


# ============================================================================
# Links and attribution
# ============================================================================


class SqlLinkRepository(_SqlRepository):
    """Short links, sent links and clicks on PostgreSQL."""

    async def save_short_link(
        self, link_id: str, merchant_id: UUID, kind: LinkKind, target_url: str
    ) -> None:
        async with self._sessions() as session:
            session.add(
                ShortLink(
                    link_id=link_id,
                    merchant_id=merchant_id,
                    kind=kind.value,
                    target_url=target_url,
                )
            )
            await session.commit()

    async def get_short_link(self, link_id: str) -> str | None:
        async with self._sessions() as session:
            row = await session.get(ShortLink, link_id)
            return row.target_url if row else None

    async def record_link_sent(self, link: LinkSentData) -> bool:
        stmt = (
            pg_insert(LinkSent)
            .values(
                id=uuid4(),
                link_id=link.link_id,
                message_id=link.message_id,
                merchant_id=link.merchant_id,
                channel=link.channel.value,
                target_url=link.target_url,
                reply_text=link.reply_text,
                product_id=link.product_id,
                variant_id=link.variant_id,
                extra_link_ids=list(link.extra_link_ids),
                created_at=_utc_now(),
            )
            .on_conflict_do_nothing()
            .returning(LinkSent.id)
        )
        async with self._sessions() as session:
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return inserted is not None

    async def get_link_sent(self, link_id: str) -> LinkSentData | None:
        stmt = select(LinkSent).where(
            or_(LinkSent.link_id == link_id, LinkSent.extra_link_ids.contains([link_id]))
        )
        async with self._sessions() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return LinkSentData(
                link_id=row.link_id,
                target_url=row.target_url,
                message_id=row.message_id,
                merchant_id=row.merchant_id,
                channel=Channel(row.channel),
                reply_text=row.reply_text,
                product_id=row.product_id,
                variant_id=row.variant_id,
                extra_link_ids=tuple(row.extra_link_ids or ()),
            )

    async def last_link_for_sender(self, merchant_id: UUID, sender_id: str) -> str | None:
        stmt = (
            select(LinkSent.target_url)
            .join(MessageRow, LinkSent.message_id == MessageRow.id)
            .where(MessageRow.merchant_id == merchant_id, MessageRow.sender_id == sender_id)
            .order_by(LinkSent.created_at.desc())
            .limit(1)
        )
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def record_click(
        self, link_id: str, user_agent: str | None, ip_address: str | None
    ) -> None:
        async with self._sessions() as session:
            session.add(
                LinkClick(
                    link_id=link_id,
                    user_agent=user_agent[:512] if user_agent else None,
                    ip_address=ip_address,
                )
            )
            await session.commit()


class SqlAttributionRepository(_SqlRepository):
    """Order attribution on PostgreSQL."""

    async def record_order(self, attribution: OrderAttributionData) -> bool:
        stmt = (
            pg_insert(OrderAttribution)
            .values(
                id=uuid4(),
                merchant_id=attribution.merchant_id,
                order_id=attribution.order_id,
                link_id=attribution.link_id,
                message_id=attribution.message_id,
                channel=attribution.channel.value if attribution.channel else None,
                total_price=attribution.total_price,
                currency=attribution.currency,
                created_at=_utc_now(),
            )
            .on_conflict_do_nothing(constraint="uq_order_attribution")
            .returning(OrderAttribution.id)
        )
        async with self._sessions() as session:
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return inserted is not None


# ============================================================================
# Webhook queue
# ============================================================================


class SqlWebhookQueueRepository(_SqlRepository):
    """Durable inbound queue on PostgreSQL (SKIP LOCKED claiming)."""

    async def enqueue(self, event: InboundEvent, item: WebhookItem) -> bool:
        now = _utc_now()
        stmt = (
            pg_insert(WebhookEventRow)
            .values(
                id=uuid4(),
                dedup_key=event.dedup_key,
                business_account_id=item.business_account_id,
                kind=item.kind,
                field=item.field,
                payload=dict(item.payload),
                entry_time=item.entry_time,
                status=QueueStatus.PENDING.value,
                attempts=0,
                not_before=now,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[WebhookEventRow.dedup_key])
            .returning(WebhookEventRow.id)
        )
        async with self._sessions() as session:
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return inserted is not None

    async def claim_batch(
        self, limit: int, now: datetime, visibility_timeout_seconds: int
    ) -> list[QueuedEvent]:
        stale_before = now - timedelta(seconds=visibility_timeout_seconds)
        stmt = (
            select(WebhookEventRow)
            .where(
                or_(
                    and_(
                        WebhookEventRow.status == QueueStatus.PENDING.value,
                        WebhookEventRow.not_before <= now,
                    ),
                    and_(
                        WebhookEventRow.status == QueueStatus.PROCESSING.value,
                        WebhookEventRow.locked_at < stale_before,
                    ),
                )
            )
            .order_by(WebhookEventRow.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
            for row in rows:
                row.status = QueueStatus.PROCESSING.value
                row.locked_at = now
                row.attempts += 1
            await session.commit()
            return [
                QueuedEvent(
                    id=row.id,
                    dedup_key=row.dedup_key,
                    business_account_id=row.business_account_id,
                    kind=row.kind,
                    field=row.field,
                    payload=row.payload,
                    attempts=row.attempts,
                    entry_time=row.entry_time,
                )
                for row in rows
            ]

    async def _update(self, event_id: UUID, **values: object) -> None:
        stmt = (
            update(WebhookEventRow)
            .where(WebhookEventRow.id == event_id)
            .values(locked_at=None, updated_at=_utc_now(), **values)
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def mark_done(
        self, event_id: UUID, outcome: DecisionOutcome, reason: ReasonCode
    ) -> None:
        await self._update(
            event_id, status=QueueStatus.DONE.value, outcome=outcome.value, reason=reason.value
        )

    async def reschedule(self, event_id: UUID, not_before: datetime, error: str) -> None:
        await self._update(
            event_id, status=QueueStatus.PENDING.value, not_before=not_before, last_error=error
        )

    async def mark_failed(self, event_id: UUID, error: str) -> None:
        await self._update(event_id, status=QueueStatus.FAILED.value, last_error=error)


# ============================================================================
# Follow-ups and customer data
# ============================================================================


class SqlFollowupRepository(_SqlRepository):
    """Follow-up candidates and ledger on PostgreSQL."""

    async def list_candidates(
        self, received_after: datetime, received_before: datetime, limit: int
    ) -> list[FollowupCandidate]:
        later = aliased(MessageRow)
        has_later_message = (
            select(later.id)
            .where(
                later.merchant_id == MessageRow.merchant_id,
                later.sender_id == MessageRow.sender_id,
                later.event_timestamp > MessageRow.event_timestamp,
            )
            .exists()
        )
        was_clicked = (
            select(LinkClick.id)
            .where(
                or_(
                    LinkClick.link_id == LinkSent.link_id,
                    LinkClick.link_id == any_(LinkSent.extra_link_ids),
                )
            )
            .exists()
        )
        was_followed_up = (
            select(Followup.id)
            .where(Followup.message_id == MessageRow.id, Followup.link_id == LinkSent.link_id)
            .exists()
        )
        stmt = (
            select(
                MessageRow.merchant_id,
                MessageRow.id,
                MessageRow.sender_id,
                LinkSent.link_id,
                MessageRow.event_timestamp,
            )
            .join(LinkSent, LinkSent.message_id == MessageRow.id)
            .where(
                MessageRow.channel == Channel.DM.value,
                MessageRow.event_timestamp >= received_after,
                MessageRow.event_timestamp < received_before,
                ~has_later_message,
                ~was_clicked,
                ~was_followed_up,
            )
            .order_by(MessageRow.event_timestamp)
            .limit(limit)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).all()
            return [
                FollowupCandidate(
                    merchant_id=row[0],
                    message_id=row[1],
                    sender_id=row[2],
                    link_id=row[3],
                    received_at=row[4],
                )
                for row in rows
            ]

    async def claim(self, candidate: FollowupCandidate, claimed_at: datetime) -> bool:
        stmt = (
            pg_insert(Followup)
            .values(
                id=uuid4(),
                merchant_id=candidate.merchant_id,
                message_id=candidate.message_id,
                link_id=candidate.link_id,
                claimed_at=claimed_at,
            )
            .on_conflict_do_nothing(constraint="uq_followup_message_link")
            .returning(Followup.id)
        )
        async with self._sessions() as session:
            inserted = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()
            return inserted is not None

    async def release(self, candidate: FollowupCandidate) -> None:
        stmt = delete(Followup).where(
            Followup.message_id == candidate.message_id,
            Followup.link_id == candidate.link_id,
            Followup.sent_at.is_(None),
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def mark_sent(
        self, candidate: FollowupCandidate, external_message_id: str, sent_at: datetime
    ) -> None:
        stmt = (
            update(Followup)
            .where(
                Followup.message_id == candidate.message_id,
                Followup.link_id == candidate.link_id,
            )
            .values(external_message_id=external_message_id, sent_at=sent_at)
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()


class SqlCustomerDataRepository(_SqlRepository):
    """Customer erasure on PostgreSQL, in one transaction."""

    async def delete_sender(self, sender_id: str) -> int:
        message_ids = select(MessageRow.id).where(MessageRow.sender_id == sender_id)
        link_ids = select(LinkSent.link_id).where(LinkSent.message_id.in_(message_ids))
        extra_link_ids = select(func.unnest(LinkSent.extra_link_ids)).where(
            LinkSent.message_id.in_(message_ids)
        )
        statements = (
            delete(LinkClick).where(
                or_(LinkClick.link_id.in_(link_ids), LinkClick.link_id.in_(extra_link_ids))
            ),
            delete(OrderAttribution).where(OrderAttribution.message_id.in_(message_ids)),
            # links_sent and followups cascade from messages
            delete(MessageRow).where(MessageRow.sender_id == sender_id),
            delete(ContactOptOut).where(ContactOptOut.sender_id == sender_id),
            delete(WebhookEventRow).where(
                or_(
                    WebhookEventRow.payload.contains({"sender": {"id": sender_id}}),
                    WebhookEventRow.payload.contains({"from": {"id": sender_id}}),
                )
            ),
        )
        removed = 0
        async with self._sessions() as session:
            for stmt in statements:
                result = await session.execute(stmt)
                removed += result.rowcount or 0
            await session.commit()
        return removed
