"""
Segment Repository

Data access layer for audience segments - PostgreSQL (Async)
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.postgres_client import PostgresClientWrapper

from .campaign_repository import json_dumps
from .models import CampaignStatus, Segment
from .rule_evaluator import parse_rule_tree, rule_tree_to_dict

logger = logging.getLogger(__name__)


class SegmentRepository:
    """Segment data repository - PostgreSQL (Async)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None):
        self.db = db or PostgresClientWrapper("outreach_service")
        self.schema = "outreach"
        self.segments_table = "segments"
        self.campaigns_table = "campaigns"

    async def save_segment(self, segment: Segment) -> Segment:
        """Insert or update a segment"""
        try:
            now = datetime.now(timezone.utc)
            query = f'''
                INSERT INTO {self.schema}.{self.segments_table} (
                    segment_id, name, description, rule_tree, audience_size,
                    last_refreshed_at, tags, created_by, created_at, updated_at
                ) VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7::jsonb, $8, $9, $10)
                ON CONFLICT (segment_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    rule_tree = EXCLUDED.rule_tree,
                    audience_size = EXCLUDED.audience_size,
                    last_refreshed_at = EXCLUDED.last_refreshed_at,
                    tags = EXCLUDED.tags,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
            '''
            params = [
                segment.segment_id,
                segment.name,
                segment.description,
                json_dumps(rule_tree_to_dict(segment.rule_tree)),
                segment.audience_size,
                segment.last_refreshed_at,
                json_dumps(segment.tags),
                segment.created_by,
                segment.created_at or now,
                now,
            ]

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_segment(result)

        except Exception as e:
            logger.error(f"Error saving segment {segment.segment_id}: {e}")
            raise

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        """Get segment by ID"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.segments_table}
                WHERE segment_id = $1
            '''
            async with self.db:
                result = await self.db.query_row(query, params=[segment_id])

            return self._row_to_segment(result) if result else None

        except Exception as e:
            logger.error(f"Error getting segment {segment_id}: {e}")
            raise

    async def list_segments(
        self,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Segment], int]:
        """List segments, newest first"""
        try:
            conditions = []
            params: List[Any] = []

            if search:
                params.append(f"%{search}%")
                conditions.append(f"(name ILIKE ${len(params)} OR description ILIKE ${len(params)})")

            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

            count_query = f"SELECT COUNT(*) AS total FROM {self.schema}.{self.segments_table} {where}"
            params_page = params + [limit, offset]
            query = f'''
                SELECT * FROM {self.schema}.{self.segments_table}
                {where}
                ORDER BY created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
            '''

            async with self.db:
                count_row = await self.db.query_row(count_query, params=params)
                results = await self.db.query(query, params=params_page)

            total = count_row["total"] if count_row else 0
            return [self._row_to_segment(row) for row in results], total

        except Exception as e:
            logger.error(f"Error listing segments: {e}")
            raise

    async def update_segment(
        self,
        segment_id: str,
        updates: Dict[str, Any],
        frozen_by: Optional[Sequence[CampaignStatus]] = None,
    ) -> Optional[Segment]:
        """
        Update segment fields.

        With frozen_by, the update only applies while no campaign in one of
        those statuses references the segment; the check and the write are
        one statement. Returns None when nothing was updated.
        """
        try:
            if not updates:
                return await self.get_segment(segment_id)

            set_clauses = []
            params: List[Any] = []

            for key, value in updates.items():
                if key == "rule_tree":
                    params.append(json_dumps(rule_tree_to_dict(value)))
                    set_clauses.append(f"{key} = ${len(params)}::jsonb")
                elif isinstance(value, (dict, list)):
                    params.append(json_dumps(value))
                    set_clauses.append(f"{key} = ${len(params)}::jsonb")
                else:
                    params.append(value)
                    set_clauses.append(f"{key} = ${len(params)}")

            params.append(datetime.now(timezone.utc))
            set_clauses.append(f"updated_at = ${len(params)}")
            params.append(segment_id)
            where = f"segment_id = ${len(params)}"

            if frozen_by:
                params.append([s.value for s in frozen_by])
                where += f'''
                  AND NOT EXISTS (
                      SELECT 1 FROM {self.schema}.{self.campaigns_table} c
                      WHERE c.segment_id = {self.segments_table}.segment_id
                        AND c.status = ANY(${len(params)}::text[])
                  )'''

            query = f'''
                UPDATE {self.schema}.{self.segments_table}
                SET {", ".join(set_clauses)}
                WHERE {where}
                RETURNING *
            '''

            async with self.db:
                result = await self.db.query_row(query, params=params)

            return self._row_to_segment(result) if result else None

        except Exception as e:
            logger.error(f"Error updating segment {segment_id}: {e}")
            raise

    async def delete_segment(self, segment_id: str) -> bool:
        """Delete segment"""
        try:
            query = f'''
                DELETE FROM {self.schema}.{self.segments_table}
                WHERE segment_id = $1
            '''
            async with self.db:
                status = await self.db.execute(query, params=[segment_id])
            return status.endswith(" 1")

        except Exception as e:
            logger.error(f"Error deleting segment {segment_id}: {e}")
            raise

    def _row_to_segment(self, row: Dict[str, Any]) -> Segment:
        """Convert database row to Segment model"""
        rule_tree = row.get("rule_tree")
        if isinstance(rule_tree, str):
            rule_tree = json.loads(rule_tree)

        tags = row.get("tags", [])
        if isinstance(tags, str):
            tags = json.loads(tags)

        return Segment(
            segment_id=row["segment_id"],
            name=row["name"],
            description=row.get("description"),
            rule_tree=parse_rule_tree(rule_tree),
            audience_size=row.get("audience_size") or 0,
            last_refreshed_at=row.get("last_refreshed_at"),
            tags=tags or [],
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
