"""
Campaign Repository

Data access layer for campaigns and delivery records - PostgreSQL (Async)
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.postgres_client import PostgresClientWrapper

from .models import (
    Campaign,
    CampaignStats,
    CampaignStatus,
    DeliveryRecord,
    DeliveryStatus,
)

logger = logging.getLogger(__name__)


class ExtendedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def json_dumps(obj):
    """JSON dumps with Decimal and datetime support"""
    return json.dumps(obj, cls=ExtendedJSONEncoder)


def _to_param(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class CampaignRepository:
    """Campaign and delivery record repository - PostgreSQL (Async)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db or PostgresClientWrapper("outreach_service")
        self.schema = "outreach"

        # Table names
        self.campaigns_table = "campaigns"
        self.records_table = "delivery_records"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Campaign repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Campaign repository database connection closed")

    async def health_check(self) -> bool:
        """Check repository health"""
        try:
            async with self.db:
                result = await self.db.query_row("SELECT 1 as healthy")
                return result is not None
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    # ====================
    # Campaign CRUD
    # ====================

    async def save_campaign(self, campaign: Campaign) -> Campaign:
        """Save a campaign"""
        try:
            from .rule_evaluator import rule_tree_to_dict

            now = datetime.now(timezone.utc)
            custom_rules = rule_tree_to_dict(campaign.custom_rule_tree)

            query = f'''
                INSERT INTO {self.schema}.{self.campaigns_table} (
                    campaign_id, name, description, message, status,
                    segment_id, custom_rule_tree, audience_size, scheduled_at,
                    sent_at, completed_at, cancelled_at,
                    stats_delivered, stats_failed, stats_pending,
                    error, tags, metadata, created_by, created_at, updated_at
                ) VALUES (
                    $1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10,
                    $11, $12, $13, $14, $15, $16, $17::jsonb, $18::jsonb,
                    $19, $20, $21
                )
                ON CONFLICT (campaign_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    message = EXCLUDED.message,
                    segment_id = EXCLUDED.segment_id,
                    custom_rule_tree = EXCLUDED.custom_rule_tree,
                    scheduled_at = EXCLUDED.scheduled_at,
                    tags = EXCLUDED.tags,
                    metadata = EXCLUDED.metadata,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            '''

            params = [
                campaign.campaign_id,
                campaign.name,
                campaign.description,
                campaign.message,
                campaign.status.value,
                campaign.segment_id,
                json_dumps(custom_rules) if custom_rules is not None else None,
                campaign.audience_size,
                campaign.scheduled_at,
                campaign.sent_at,
                campaign.completed_at,
                campaign.cancelled_at,
                campaign.stats.delivered,
                campaign.stats.failed,
                campaign.stats.pending,
                campaign.error,
                json_dumps(campaign.tags),
                json_dumps(campaign.metadata),
                campaign.created_by,
                campaign.created_at or now,
                now,
            ]

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_campaign(result)

        except Exception as e:
            logger.error(f"Error saving campaign {campaign.campaign_id}: {e}")
            raise

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign by ID"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                WHERE campaign_id = $1
            '''

            async with self.db:
                result = await self.db.query_row(query, params=[campaign_id])

            return self._row_to_campaign(result) if result else None

        except Exception as e:
            logger.error(f"Error getting campaign {campaign_id}: {e}")
            raise

    async def get_campaign_status(self, campaign_id: str) -> Optional[CampaignStatus]:
        """Current status only"""
        try:
            query = f'''
                SELECT status FROM {self.schema}.{self.campaigns_table}
                WHERE campaign_id = $1
            '''
            async with self.db:
                result = await self.db.query_row(query, params=[campaign_id])
            return CampaignStatus(result["status"]) if result else None

        except Exception as e:
            logger.error(f"Error getting status of campaign {campaign_id}: {e}")
            raise

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        segment_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Campaign], int]:
        """List campaigns with filters, newest first"""
        try:
            conditions = []
            params: List[Any] = []

            if status:
                params.append([s.value for s in status])
                conditions.append(f"status = ANY(${len(params)}::text[])")

            if segment_id:
                params.append(segment_id)
                conditions.append(f"segment_id = ${len(params)}")

            if search:
                params.append(f"%{search}%")
                conditions.append(f"(name ILIKE ${len(params)} OR description ILIKE ${len(params)})")

            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

            count_query = f"SELECT COUNT(*) AS total FROM {self.schema}.{self.campaigns_table} {where}"
            query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                {where}
                ORDER BY created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
            '''

            async with self.db:
                count_row = await self.db.query_row(count_query, params=params)
                results = await self.db.query(query, params=params + [limit, offset])

            total = count_row["total"] if count_row else 0
            return [self._row_to_campaign(row) for row in results], total

        except Exception as e:
            logger.error(f"Error listing campaigns: {e}")
            raise

    async def transition_status(
        self,
        campaign_id: str,
        from_statuses: Sequence[CampaignStatus],
        to_status: CampaignStatus,
        **fields: Any,
    ) -> Optional[Campaign]:
        """Compare-and-set status change; None when the current status does not match"""
        updates = {"status": to_status, **fields}
        return await self._update_campaign(campaign_id, updates, expected_statuses=from_statuses)

    async def claim_due_campaign(self, campaign_id: str, now: datetime) -> Optional[Campaign]:
        """
        Atomically move a due Scheduled campaign to Active.

        Exactly one concurrent caller gets the row back; the rest get None.
        """
        try:
            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET status = $1, sent_at = $2, updated_at = $2
                WHERE campaign_id = $3 AND status = $4 AND scheduled_at <= $2
                RETURNING *
            '''
            params = [CampaignStatus.ACTIVE.value, now, campaign_id, CampaignStatus.SCHEDULED.value]

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_campaign(result) if result else None

        except Exception as e:
            logger.error(f"Error claiming campaign {campaign_id}: {e}")
            raise

    async def list_due_campaigns(self, now: datetime, limit: int = 100) -> List[Campaign]:
        """Scheduled campaigns whose time has come, oldest first"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.campaigns_table}
                WHERE status = $1 AND scheduled_at <= $2
                ORDER BY scheduled_at ASC
                LIMIT $3
            '''
            async with self.db:
                results = await self.db.query(
                    query, params=[CampaignStatus.SCHEDULED.value, now, limit]
                )
            return [self._row_to_campaign(row) for row in results]

        except Exception as e:
            logger.error(f"Error listing due campaigns: {e}")
            raise

    async def count_campaigns_for_segment(
        self, segment_id: str, status: Optional[List[CampaignStatus]] = None
    ) -> int:
        """Number of campaigns referencing a segment"""
        try:
            params: List[Any] = [segment_id]
            query = f'''
                SELECT COUNT(*) AS total FROM {self.schema}.{self.campaigns_table}
                WHERE segment_id = $1
            '''
            if status:
                params.append([s.value for s in status])
                query += " AND status = ANY($2::text[])"

            async with self.db:
                result = await self.db.query_row(query, params=params)
            return result["total"] if result else 0

        except Exception as e:
            logger.error(f"Error counting campaigns for segment {segment_id}: {e}")
            raise

    async def delete_campaign(self, campaign_id: str) -> bool:
        """Delete campaign; delivery records cascade"""
        try:
            query = f'''
                DELETE FROM {self.schema}.{self.campaigns_table}
                WHERE campaign_id = $1
            '''
            async with self.db:
                status = await self.db.execute(query, params=[campaign_id])
            return status.endswith(" 1")

        except Exception as e:
            logger.error(f"Error deleting campaign {campaign_id}: {e}")
            raise

    async def _update_campaign(
        self,
        campaign_id: str,
        updates: Dict[str, Any],
        expected_statuses: Optional[Sequence[CampaignStatus]] = None,
    ) -> Optional[Campaign]:
        try:
            from .rule_evaluator import rule_tree_to_dict

            if not updates:
                return await self.get_campaign(campaign_id)

            set_clauses = []
            params: List[Any] = []

            for key, value in updates.items():
                if key == "custom_rule_tree":
                    tree = rule_tree_to_dict(value)
                    params.append(json_dumps(tree) if tree is not None else None)
                    set_clauses.append(f"{key} = ${len(params)}::jsonb")
                elif key == "stats":
                    for column, count in (
                        ("stats_delivered", value.delivered),
                        ("stats_failed", value.failed),
                        ("stats_pending", value.pending),
                    ):
                        params.append(count)
                        set_clauses.append(f"{column} = ${len(params)}")
                elif isinstance(value, (dict, list)):
                    params.append(json_dumps(value))
                    set_clauses.append(f"{key} = ${len(params)}::jsonb")
                else:
                    params.append(_to_param(value))
                    set_clauses.append(f"{key} = ${len(params)}")

            params.append(datetime.now(timezone.utc))
            set_clauses.append(f"updated_at = ${len(params)}")

            params.append(campaign_id)
            where = f"campaign_id = ${len(params)}"
            if expected_statuses is not None:
                params.append([s.value for s in expected_statuses])
                where += f" AND status = ANY(${len(params)}::text[])"

            query = f'''
                UPDATE {self.schema}.{self.campaigns_table}
                SET {", ".join(set_clauses)}
                WHERE {where}
                RETURNING *
            '''

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_campaign(result) if result else None

        except Exception as e:
            logger.error(f"Error updating campaign {campaign_id}: {e}")
            raise

    # ====================
    # Delivery Records
    # ====================

    async def create_delivery_records(
        self, campaign_id: str, records: List[DeliveryRecord]
    ) -> int:
        """Bulk-insert Pending records in one statement; existing pairs are kept"""
        if not records:
            return 0
        try:
            now = datetime.now(timezone.utc)
            query = f'''
                INSERT INTO {self.schema}.{self.records_table} (
                    campaign_id, recipient_id, status, attempts, message, created_at, updated_at
                )
                SELECT $1, t.recipient_id, $2, 0, t.message, $3, $3
                FROM unnest($4::text[], $5::text[]) AS t(recipient_id, message)
                ON CONFLICT (campaign_id, recipient_id) DO NOTHING
            '''
            params = [
                campaign_id,
                DeliveryStatus.PENDING.value,
                now,
                [r.recipient_id for r in records],
                [r.message for r in records],
            ]

            async with self.db:
                status = await self.db.execute(query, params=params)

            inserted = int(status.split()[-1]) if status else 0
            logger.debug(f"Created {inserted} delivery records for campaign {campaign_id}")
            return inserted

        except Exception as e:
            logger.error(f"Error creating delivery records for campaign {campaign_id}: {e}")
            raise

    async def get_delivery_record(
        self, campaign_id: str, recipient_id: str
    ) -> Optional[DeliveryRecord]:
        """Get one delivery record"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.records_table}
                WHERE campaign_id = $1 AND recipient_id = $2
            '''
            async with self.db:
                result = await self.db.query_row(query, params=[campaign_id, recipient_id])
            return self._row_to_record(result) if result else None

        except Exception as e:
            logger.error(f"Error getting delivery record {campaign_id}/{recipient_id}: {e}")
            raise

    async def list_delivery_records(
        self,
        campaign_id: str,
        status: Optional[DeliveryStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[DeliveryRecord], int]:
        """List delivery records for a campaign"""
        try:
            params: List[Any] = [campaign_id]
            where = "campaign_id = $1"
            if status:
                params.append(status.value)
                where += " AND status = $2"

            count_query = f"SELECT COUNT(*) AS total FROM {self.schema}.{self.records_table} WHERE {where}"
            query = f'''
                SELECT * FROM {self.schema}.{self.records_table}
                WHERE {where}
                ORDER BY recipient_id
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
            '''

            async with self.db:
                count_row = await self.db.query_row(count_query, params=params)
                results = await self.db.query(query, params=params + [limit, offset])

            total = count_row["total"] if count_row else 0
            return [self._row_to_record(row) for row in results], total

        except Exception as e:
            logger.error(f"Error listing delivery records for campaign {campaign_id}: {e}")
            raise

    async def update_delivery_record(
        self, campaign_id: str, recipient_id: str, **fields: Any
    ) -> Optional[DeliveryRecord]:
        """Update one delivery record"""
        try:
            set_clauses = []
            params: List[Any] = []

            for key, value in fields.items():
                params.append(_to_param(value))
                set_clauses.append(f"{key} = ${len(params)}")

            params.append(datetime.now(timezone.utc))
            set_clauses.append(f"updated_at = ${len(params)}")
            params.extend([campaign_id, recipient_id])

            query = f'''
                UPDATE {self.schema}.{self.records_table}
                SET {", ".join(set_clauses)}
                WHERE campaign_id = ${len(params) - 1} AND recipient_id = ${len(params)}
                RETURNING *
            '''

            async with self.db:
                result = await self.db.query_row(query, params=params)
            return self._row_to_record(result) if result else None

        except Exception as e:
            logger.error(f"Error updating delivery record {campaign_id}/{recipient_id}: {e}")
            raise

    async def mark_records_sent(
        self, campaign_id: str, recipient_ids: List[str], sent_at: datetime
    ) -> int:
        """Stamp sent_at on records whose send the broker accepted"""
        if not recipient_ids:
            return 0
        try:
            query = f'''
                UPDATE {self.schema}.{self.records_table}
                SET sent_at = $1, updated_at = $1
                WHERE campaign_id = $2 AND recipient_id = ANY($3::text[])
            '''
            async with self.db:
                status = await self.db.execute(query, params=[sent_at, campaign_id, recipient_ids])
            return int(status.split()[-1]) if status else 0

        except Exception as e:
            logger.error(f"Error marking records sent for campaign {campaign_id}: {e}")
            raise

    async def fail_pending_records(
        self,
        campaign_id: str,
        recipient_ids: Optional[List[str]],
        error: str,
        attempted: bool = True,
    ) -> int:
        """Mark Pending records Failed; every Pending record when recipient_ids is None"""
        try:
            now = datetime.now(timezone.utc)
            params: List[Any] = [DeliveryStatus.FAILED.value, error, now, campaign_id, DeliveryStatus.PENDING.value]
            attempts_sql = "attempts + 1" if attempted else "attempts"
            query = f'''
                UPDATE {self.schema}.{self.records_table}
                SET status = $1, last_error = $2, attempts = {attempts_sql}, updated_at = $3
                WHERE campaign_id = $4 AND status = $5
            '''
            if recipient_ids is not None:
                if not recipient_ids:
                    return 0
                params.append(recipient_ids)
                query += " AND recipient_id = ANY($6::text[])"

            async with self.db:
                status = await self.db.execute(query, params=params)
            return int(status.split()[-1]) if status else 0

        except Exception as e:
            logger.error(f"Error failing records for campaign {campaign_id}: {e}")
            raise

    async def count_records_by_status(self, campaign_id: str) -> Dict[str, int]:
        """Delivery record counts keyed by status"""
        try:
            query = f'''
                SELECT status, COUNT(*) AS total FROM {self.schema}.{self.records_table}
                WHERE campaign_id = $1
                GROUP BY status
            '''
            async with self.db:
                results = await self.db.query(query, params=[campaign_id])
            return self._status_counts(results)

        except Exception as e:
            logger.error(f"Error counting records for campaign {campaign_id}: {e}")
            raise

    async def recompute_stats(self, campaign_id: str) -> Optional[Campaign]:
        """
        Recompute stats counts from delivery records.

        Runs in one transaction holding the campaign row lock, so concurrent
        recomputes for the same campaign serialize across processes.
        """
        try:
            async with self.db.transaction() as tx:
                locked = await tx.query_row(
                    f"SELECT campaign_id FROM {self.schema}.{self.campaigns_table} "
                    f"WHERE campaign_id = $1 FOR UPDATE",
                    [campaign_id],
                )
                if not locked:
                    return None

                rows = await tx.query(
                    f"SELECT status, COUNT(*) AS total FROM {self.schema}.{self.records_table} "
                    f"WHERE campaign_id = $1 GROUP BY status",
                    [campaign_id],
                )
                counts = self._status_counts(rows)

                result = await tx.query_row(
                    f'''
                    UPDATE {self.schema}.{self.campaigns_table}
                    SET stats_delivered = $1, stats_failed = $2, stats_pending = $3, updated_at = $4
                    WHERE campaign_id = $5
                    RETURNING *
                    ''',
                    [
                        counts[DeliveryStatus.DELIVERED.value],
                        counts[DeliveryStatus.FAILED.value],
                        counts[DeliveryStatus.PENDING.value],
                        datetime.now(timezone.utc),
                        campaign_id,
                    ],
                )

            return self._row_to_campaign(result) if result else None

        except Exception as e:
            logger.error(f"Error recomputing stats for campaign {campaign_id}: {e}")
            raise

    # ====================
    # Row Converters
    # ====================

    def _status_counts(self, rows: List[Dict[str, Any]]) -> Dict[str, int]:
        counts = {status.value: 0 for status in DeliveryStatus}
        for row in rows:
            counts[row["status"]] = row["total"]
        return counts

    def _row_to_campaign(self, row: Dict[str, Any]) -> Campaign:
        """Convert database row to Campaign model"""
        custom_rule_tree = row.get("custom_rule_tree")
        if isinstance(custom_rule_tree, str):
            custom_rule_tree = json.loads(custom_rule_tree)

        tags = row.get("tags", [])
        if isinstance(tags, str):
            tags = json.loads(tags)

        metadata = row.get("metadata", {})
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        audience_size = row.get("audience_size") or 0

        return Campaign(
            campaign_id=row["campaign_id"],
            name=row["name"],
            description=row.get("description"),
            message=row["message"],
            status=CampaignStatus(row["status"]),
            segment_id=row.get("segment_id"),
            custom_rule_tree=custom_rule_tree,
            audience_size=audience_size,
            scheduled_at=row.get("scheduled_at"),
            sent_at=row.get("sent_at"),
            completed_at=row.get("completed_at"),
            cancelled_at=row.get("cancelled_at"),
            stats=CampaignStats(
                delivered=row.get("stats_delivered") or 0,
                failed=row.get("stats_failed") or 0,
                pending=row.get("stats_pending") or 0,
                audience_size=audience_size,
            ),
            error=row.get("error"),
            tags=tags or [],
            metadata=metadata or {},
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_record(self, row: Dict[str, Any]) -> DeliveryRecord:
        """Convert database row to DeliveryRecord model"""
        return DeliveryRecord(
            campaign_id=row["campaign_id"],
            recipient_id=row["recipient_id"],
            status=DeliveryStatus(row["status"]),
            attempts=row.get("attempts") or 0,
            last_error=row.get("last_error"),
            message=row.get("message"),
            sent_at=row.get("sent_at"),
            delivered_at=row.get("delivered_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
