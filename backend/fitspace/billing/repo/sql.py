"""LedgerStore on SQLAlchemy async (Postgres via psycopg in production, SQLite in tests).

Queries are plain SQL with named parameters. Timestamps are TIMESTAMPTZ on
Postgres and UTC ISO-8601 text on SQLite, which sorts and compares the same
way as long as every value is written in UTC with microseconds.
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from fitspace.services.db import Database, is_transient
from fitspace.utils.logger import logger
from ..domain.entities import (
    BillingInterval,
    BillingRecord,
    PackageTemplate,
    ProviderAction,
    Subscription,
)
from ..shared.exceptions import (
    ConcurrencyConflict,
    SubscriptionConflict,
    SubscriptionNotFound,
    TransientStoreError,
)
from .interfaces import LedgerStore, PackageCatalog

_TIMESTAMP_COLUMNS = (
    "start_date", "end_date", "trial_start", "grace_start", "next_payment_retry_at",
    "last_event_at", "created_at", "updated_at", "period_start", "period_end",
)

_LIVE_STATUS_SQL = "('PENDING', 'ACTIVE', 'CANCELLED_ACTIVE')"


def _schema(ts: str) -> List[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS subscriptions (
            id VARCHAR(64) PRIMARY KEY,
            user_id VARCHAR(128) NOT NULL,
            package_id VARCHAR(128) NOT NULL,
            status VARCHAR(32) NOT NULL,
            start_date {ts},
            end_date {ts},
            is_trial_active BOOLEAN NOT NULL DEFAULT FALSE,
            trial_start {ts},
            is_in_grace_period BOOLEAN NOT NULL DEFAULT FALSE,
            grace_start {ts},
            external_subscription_id VARCHAR(255),
            last_processed_event_id VARCHAR(255),
            trainer_id VARCHAR(128),
            currency VARCHAR(8),
            failed_payment_retries INTEGER NOT NULL DEFAULT 0,
            next_payment_retry_at {ts},
            previous_subscription_id VARCHAR(64),
            recent_event_ids TEXT NOT NULL DEFAULT '[]',
            last_event_at {ts},
            cancellation_reason TEXT,
            created_at {ts} NOT NULL,
            updated_at {ts} NOT NULL,
            version INTEGER NOT NULL DEFAULT 1
        )
        """,
        f"""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_subscriptions_live_pair
        ON subscriptions (user_id, package_id) WHERE status IN {_LIVE_STATUS_SQL}
        """,
        "CREATE INDEX IF NOT EXISTS idx_subscriptions_user_package_status "
        "ON subscriptions (user_id, package_id, status)",
        "CREATE INDEX IF NOT EXISTS idx_subscriptions_external_id "
        "ON subscriptions (external_subscription_id)",
        f"""
        CREATE TABLE IF NOT EXISTS billing_records (
            id VARCHAR(64) PRIMARY KEY,
            subscription_id VARCHAR(64) NOT NULL REFERENCES subscriptions (id),
            amount BIGINT NOT NULL,
            currency VARCHAR(8) NOT NULL,
            status VARCHAR(16) NOT NULL,
            period_start {ts},
            period_end {ts},
            description TEXT NOT NULL,
            failure_reason TEXT,
            external_reference VARCHAR(255),
            created_at {ts}
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_billing_records_subscription "
        "ON billing_records (subscription_id)",
        f"""
        CREATE TABLE IF NOT EXISTS provider_actions (
            id VARCHAR(64) PRIMARY KEY,
            subscription_id VARCHAR(64) NOT NULL,
            external_subscription_id VARCHAR(255) NOT NULL,
            action VARCHAR(32) NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at {ts}
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS package_templates (
            id VARCHAR(128) PRIMARY KEY,
            name TEXT NOT NULL,
            price BIGINT NOT NULL,
            currency VARCHAR(8) NOT NULL,
            duration VARCHAR(16) NOT NULL DEFAULT 'MONTHLY',
            trainer_id VARCHAR(128),
            team_platform_fee_percent NUMERIC(5, 2)
        )
        """,
    ]


class SqlLedgerStore(LedgerStore):
    def __init__(self, db: Database):
        self.db = db

    async def create_schema(self) -> None:
        await self.db.init()
        ts = "TIMESTAMPTZ" if self.db.is_postgres else "TEXT"
        async with self.db.engine.begin() as conn:
            for statement in _schema(ts):
                await conn.execute(text(statement))
        logger.info("[LEDGER] Schema ready")

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.db.transaction() as session:
                yield session
        except (OperationalError, InterfaceError) as e:
            if is_transient(e) or getattr(e, "connection_invalidated", False):
                logger.warning(f"[LEDGER] Transient store failure: {e}")
                raise TransientStoreError(str(e)) from e
            raise

    def _ts(self, value: Optional[datetime]) -> Any:
        if value is None:
            return None
        value = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if self.db.is_postgres:
            return value
        return value.isoformat(timespec="microseconds")

    @staticmethod
    def _read_ts(value: Any) -> Optional[datetime]:
        if value is None:
            return None
        if not isinstance(value, datetime):
            value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _row_to_subscription(self, row: Dict[str, Any]) -> Subscription:
        data = dict(row)
        for column in _TIMESTAMP_COLUMNS:
            if column in data:
                data[column] = self._read_ts(data[column])
        raw_ids = data.get("recent_event_ids")
        data["recent_event_ids"] = json.loads(raw_ids) if isinstance(raw_ids, str) else (raw_ids or [])
        data["is_trial_active"] = bool(data.get("is_trial_active"))
        data["is_in_grace_period"] = bool(data.get("is_in_grace_period"))
        return Subscription.from_dict(data)

    def _row_to_record(self, row: Dict[str, Any]) -> BillingRecord:
        data = dict(row)
        for column in ("period_start", "period_end", "created_at"):
            data[column] = self._read_ts(data.get(column))
        return BillingRecord.from_dict(data)

    def _subscription_params(self, sub: Subscription) -> Dict[str, Any]:
        return {
            "id": sub.id,
            "user_id": sub.user_id,
            "package_id": sub.package_id,
            "status": sub.status.value,
            "start_date": self._ts(sub.start_date),
            "end_date": self._ts(sub.end_date),
            "is_trial_active": sub.is_trial_active,
            "trial_start": self._ts(sub.trial_start),
            "is_in_grace_period": sub.is_in_grace_period,
            "grace_start": self._ts(sub.grace_start),
            "external_subscription_id": sub.external_subscription_id,
            "last_processed_event_id": sub.last_processed_event_id,
            "trainer_id": sub.trainer_id,
            "currency": sub.currency,
            "failed_payment_retries": sub.failed_payment_retries,
            "next_payment_retry_at": self._ts(sub.next_payment_retry_at),
            "previous_subscription_id": sub.previous_subscription_id,
            "recent_event_ids": json.dumps(list(sub.recent_event_ids)),
            "last_event_at": self._ts(sub.last_event_at),
            "cancellation_reason": sub.cancellation_reason,
            "created_at": self._ts(sub.created_at),
            "updated_at": self._ts(sub.updated_at),
        }

    def _record_params(self, record: BillingRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "subscription_id": record.subscription_id,
            "amount": record.amount,
            "currency": record.currency,
            "status": record.status.value,
            "period_start": self._ts(record.period_start),
            "period_end": self._ts(record.period_end),
            "description": record.description,
            "failure_reason": record.failure_reason,
            "external_reference": record.external_reference,
            "created_at": self._ts(record.created_at),
        }

    async def _fetch_subscriptions(self, sql: str, params: Dict[str, Any]) -> List[Subscription]:
        async with self._tx() as session:
            result = await session.execute(text(sql), params)
            rows = [dict(r._mapping) for r in result.fetchall()]
        return [self._row_to_subscription(r) for r in rows]

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        rows = await self._fetch_subscriptions(
            "SELECT * FROM subscriptions WHERE id = :id", {"id": subscription_id}
        )
        return rows[0] if rows else None

    async def get_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        rows = await self._fetch_subscriptions(
            """
            SELECT * FROM subscriptions
            WHERE external_subscription_id = :external_id
            ORDER BY created_at DESC
            LIMIT 1
            """,
            {"external_id": external_subscription_id},
        )
        return rows[0] if rows else None

    async def list_for_user_package(self, user_id: str, package_id: str) -> List[Subscription]:
        return await self._fetch_subscriptions(
            """
            SELECT * FROM subscriptions
            WHERE user_id = :user_id AND package_id = :package_id
            ORDER BY created_at DESC
            """,
            {"user_id": user_id, "package_id": package_id},
        )

    async def list_for_user(self, user_id: str) -> List[Subscription]:
        return await self._fetch_subscriptions(
            "SELECT * FROM subscriptions WHERE user_id = :user_id ORDER BY created_at DESC",
            {"user_id": user_id},
        )

    async def list_expirable(self, now: datetime, grace_period: timedelta) -> List[Subscription]:
        return await self._fetch_subscriptions(
            """
            SELECT * FROM subscriptions
            WHERE (status = 'CANCELLED_ACTIVE' AND end_date IS NOT NULL AND end_date <= :now)
               OR (status = 'ACTIVE' AND is_in_grace_period = :in_grace
                   AND grace_start IS NOT NULL AND grace_start <= :grace_cutoff)
               OR (status = 'ACTIVE' AND is_in_grace_period = :not_in_grace
                   AND external_subscription_id IS NULL
                   AND end_date IS NOT NULL AND end_date <= :now)
            ORDER BY end_date
            """,
            {
                "now": self._ts(now),
                "grace_cutoff": self._ts(now - grace_period),
                "in_grace": True,
                "not_in_grace": False,
            },
        )

    async def list_records(self, subscription_id: str) -> List[BillingRecord]:
        async with self._tx() as session:
            result = await session.execute(
                text("""
                    SELECT * FROM billing_records
                    WHERE subscription_id = :subscription_id
                    ORDER BY created_at
                """),
                {"subscription_id": subscription_id},
            )
            rows = [dict(r._mapping) for r in result.fetchall()]
        return [self._row_to_record(r) for r in rows]

    async def _insert_record(self, session: AsyncSession, record: BillingRecord) -> None:
        await session.execute(
            text("""
                INSERT INTO billing_records (
                    id, subscription_id, amount, currency, status, period_start, period_end,
                    description, failure_reason, external_reference, created_at
                ) VALUES (
                    :id, :subscription_id, :amount, :currency, :status, :period_start, :period_end,
                    :description, :failure_reason, :external_reference, :created_at
                )
            """),
            self._record_params(record),
        )

    async def insert(self, subscription: Subscription, record: BillingRecord) -> Subscription:
        params = self._subscription_params(subscription)
        params["version"] = 1
        try:
            async with self._tx() as session:
                if subscription.is_live:
                    existing = await session.execute(
                        text(f"""
                            SELECT id FROM subscriptions
                            WHERE user_id = :user_id AND package_id = :package_id
                              AND status IN {_LIVE_STATUS_SQL}
                            LIMIT 1
                        """),
                        {"user_id": subscription.user_id, "package_id": subscription.package_id},
                    )
                    row = existing.first()
                    if row is not None:
                        raise SubscriptionConflict(subscription.user_id, subscription.package_id, row[0])
                columns = ", ".join(params)
                placeholders = ", ".join(f":{c}" for c in params)
                await session.execute(text(f"INSERT INTO subscriptions ({columns}) VALUES ({placeholders})"), params)
                await self._insert_record(session, record)
        except IntegrityError as e:
            live = await self.find_live(subscription.user_id, subscription.package_id)
            if live is not None and live.id != subscription.id:
                raise SubscriptionConflict(subscription.user_id, subscription.package_id, live.id) from e
            raise

        logger.debug(f"[LEDGER] Inserted subscription {subscription.id} ({subscription.status.value})")
        stored = subscription.copy()
        stored.version = 1
        return stored

    async def commit(
        self,
        subscription: Subscription,
        record: BillingRecord,
        expected_version: int,
    ) -> Subscription:
        params = self._subscription_params(subscription)
        params["expected_version"] = expected_version
        params["new_version"] = expected_version + 1
        assignments = ", ".join(f"{c} = :{c}" for c in self._subscription_params(subscription) if c != "id")

        async with self._tx() as session:
            result = await session.execute(
                text(f"""
                    UPDATE subscriptions
                    SET {assignments}, version = :new_version
                    WHERE id = :id AND version = :expected_version
                """),
                params,
            )
            if result.rowcount == 0:
                found = await session.execute(
                    text("SELECT version FROM subscriptions WHERE id = :id"), {"id": subscription.id}
                )
                if found.first() is None:
                    raise SubscriptionNotFound(subscription.id)
                raise ConcurrencyConflict(subscription.id, expected_version)
            await self._insert_record(session, record)

        logger.debug(f"[LEDGER] Committed subscription {subscription.id} v{expected_version + 1}")
        stored = subscription.copy()
        stored.version = expected_version + 1
        return stored

    async def enqueue_provider_action(self, action: ProviderAction) -> None:
        async with self._tx() as session:
            await session.execute(
                text("""
                    INSERT INTO provider_actions (
                        id, subscription_id, external_subscription_id, action, attempts, last_error, created_at
                    ) VALUES (
                        :id, :subscription_id, :external_subscription_id, :action, :attempts, :last_error, :created_at
                    )
                """),
                {
                    "id": action.id,
                    "subscription_id": action.subscription_id,
                    "external_subscription_id": action.external_subscription_id,
                    "action": action.action.value,
                    "attempts": action.attempts,
                    "last_error": action.last_error,
                    "created_at": self._ts(action.created_at),
                },
            )

    async def list_provider_actions(self, limit: int = 100) -> List[ProviderAction]:
        async with self._tx() as session:
            result = await session.execute(
                text("SELECT * FROM provider_actions ORDER BY created_at LIMIT :limit"),
                {"limit": limit},
            )
            rows = [dict(r._mapping) for r in result.fetchall()]
        actions = []
        for row in rows:
            row["created_at"] = self._read_ts(row.get("created_at"))
            actions.append(ProviderAction.from_dict(row))
        return actions

    async def record_provider_attempt(self, action_id: str, error: str) -> None:
        async with self._tx() as session:
            await session.execute(
                text("""
                    UPDATE provider_actions
                    SET attempts = attempts + 1, last_error = :error
                    WHERE id = :id
                """),
                {"id": action_id, "error": error},
            )

    async def complete_provider_action(self, action_id: str) -> None:
        async with self._tx() as session:
            await session.execute(text("DELETE FROM provider_actions WHERE id = :id"), {"id": action_id})


class SqlPackageCatalog(PackageCatalog):
    """Reads package templates from the ``package_templates`` table."""

    def __init__(self, db: Database):
        self.db = db

    async def get_package(self, package_id: str) -> Optional[PackageTemplate]:
        async with self.db.transaction() as session:
            result = await session.execute(
                text("SELECT * FROM package_templates WHERE id = :id"), {"id": package_id}
            )
            row = result.first()
        if row is None:
            return None
        data = dict(row._mapping)
        fee = data.get("team_platform_fee_percent")
        return PackageTemplate(
            id=data["id"],
            name=data["name"],
            price=int(data["price"]),
            currency=data["currency"],
            duration=BillingInterval(data.get("duration") or BillingInterval.MONTHLY.value),
            trainer_id=data.get("trainer_id"),
            team_platform_fee_percent=Decimal(str(fee)) if fee is not None else None,
        )

    async def save_package(self, package: PackageTemplate) -> None:
        async with self.db.transaction() as session:
            await session.execute(text("DELETE FROM package_templates WHERE id = :id"), {"id": package.id})
            await session.execute(
                text("""
                    INSERT INTO package_templates (
                        id, name, price, currency, duration, trainer_id, team_platform_fee_percent
                    ) VALUES (
                        :id, :name, :price, :currency, :duration, :trainer_id, :fee
                    )
                """),
                {
                    "id": package.id,
                    "name": package.name,
                    "price": package.price,
                    "currency": package.currency,
                    "duration": package.duration.value,
                    "trainer_id": package.trainer_id,
                    "fee": str(package.team_platform_fee_percent) if package.team_platform_fee_percent is not None else None,
                },
            )
