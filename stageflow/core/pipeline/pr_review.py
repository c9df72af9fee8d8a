"""
PR Review Fixes
===============

Per-comment fix tracking for a PR review stage. Comments fetched from
the review are recorded once; re-fetching the same review never
duplicates or resets them.
"""

from dataclasses import asdict, dataclass
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow.core.database import ProjectDatabase, utc_now
from stageflow.core.errors import NotFoundError
from stageflow.core.models import FixStatus, PrReviewFix, new_id

logger = structlog.get_logger()


@dataclass
class ReviewComment:
    """One review comment as returned by the code host."""
    comment_id: int
    body: str
    author: str = ""
    comment_type: str = "inline"        # inline | review | conversation
    author_avatar_url: Optional[str] = None
    file_path: Optional[str] = None
    line: Optional[int] = None
    diff_hunk: Optional[str] = None
    state: str = "COMMENTED"


class PrReviewTracker:
    """Fix status of review comments, keyed by (execution, comment, type)."""

    def __init__(self, db: ProjectDatabase):
        self.db = db

    async def record_comments(self, execution_id: str, comments: list[ReviewComment]) -> int:
        """
        Insert comments not seen before for this execution.

        Returns:
            Number of comments submitted (existing ones are ignored)
        """
        if not comments:
            return 0

        async def _record(session: AsyncSession) -> int:
            now = utc_now()
            rows = [
                {
                    "id": new_id(),
                    "execution_id": execution_id,
                    "fix_status": FixStatus.PENDING,
                    "created_at": now,
                    "updated_at": now,
                    **asdict(comment),
                }
                for comment in comments
            ]
            stmt = insert(PrReviewFix).values(rows).on_conflict_do_nothing(
                index_elements=["execution_id", "comment_id", "comment_type"],
            )
            await session.execute(stmt)
            return len(rows)

        count = await self.db.run(_record)
        logger.info("pr_review_comments_recorded", execution_id=execution_id, count=count)
        return count

    async def set_fix_status(
        self,
        fix_id: str,
        status: FixStatus,
        commit_hash: Optional[str] = None,
    ) -> PrReviewFix:
        async def _update(session: AsyncSession) -> PrReviewFix:
            fix = await session.get(PrReviewFix, fix_id)
            if fix is None:
                raise NotFoundError(f"PR review fix {fix_id} not found")
            fix.fix_status = status
            if commit_hash is not None:
                fix.fix_commit_hash = commit_hash
            return fix

        fix = await self.db.run(_update)
        logger.info("pr_review_fix_status", fix_id=fix_id, status=status.value)
        return fix

    async def list_fixes(self, execution_id: str) -> list[PrReviewFix]:
        async def _list(session: AsyncSession) -> list[PrReviewFix]:
            result = await session.execute(
                select(PrReviewFix)
                .where(PrReviewFix.execution_id == execution_id)
                .order_by(PrReviewFix.created_at, PrReviewFix.comment_id)
            )
            return list(result.scalars().all())

        return await self.db.run(_list)
