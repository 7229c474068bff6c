from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from funnelos.db.models import SectionLock
from funnelos.db.repositories.base import Repository


class SectionLocksRepository(Repository):
    def get(self, funnel_id: str, section_id: str) -> Optional[SectionLock]:
        stmt = select(SectionLock).where(
            SectionLock.funnel_id == funnel_id,
            SectionLock.section_id == section_id,
        )
        return self.session.scalars(stmt).first()

    def try_acquire(self, funnel_id: str, section_id: str, *, max_age_seconds: float) -> Optional[str]:
        """
        Claim the section and return a fresh lock token, or None when another
        writer holds a lock younger than `max_age_seconds`.
        """
        now = datetime.now(timezone.utc)
        token = str(uuid4())
        stale_before = now - timedelta(seconds=max_age_seconds)
        result = self.session.execute(
            update(SectionLock)
            .where(
                SectionLock.funnel_id == funnel_id,
                SectionLock.section_id == section_id,
                or_(SectionLock.lock_token.is_(None), SectionLock.locked_at < stale_before),
            )
            .values(lock_token=token, locked_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.session.commit()
            return token
        self.session.rollback()

        if self.get(funnel_id, section_id) is not None:
            return None

        self.session.add(SectionLock(funnel_id=funnel_id, section_id=section_id, lock_token=token, locked_at=now))
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return None
        return token

    def release(self, funnel_id: str, section_id: str, token: str) -> bool:
        """Clear the lock only if `token` still owns it (a reclaimed lock is left alone)."""
        result = self.session.execute(
            update(SectionLock)
            .where(
                SectionLock.funnel_id == funnel_id,
                SectionLock.section_id == section_id,
                SectionLock.lock_token == token,
            )
            .values(lock_token=None, locked_at=None)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1
