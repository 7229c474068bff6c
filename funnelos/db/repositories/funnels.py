from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select

from funnelos.db.models import Funnel
from funnelos.db.repositories.base import Repository


class FunnelsRepository(Repository):
    def get(self, funnel_id: str, *, user_id: Optional[str] = None) -> Optional[Funnel]:
        stmt = select(Funnel).where(Funnel.id == funnel_id)
        if user_id is not None:
            stmt = stmt.where(Funnel.user_id == user_id)
        return self.session.scalars(stmt).first()

    def create(self, *, user_id: str, name: Optional[str] = None, answers: Optional[dict[str, Any]] = None) -> Funnel:
        funnel = Funnel(user_id=user_id, name=name, answers=dict(answers or {}))
        return self.save(funnel)

    def merge_answers(self, funnel_id: str, updates: dict[str, Any]) -> Optional[Funnel]:
        """Overlay `updates` on the stored answers; incoming values win."""
        funnel = self.get(funnel_id)
        if not funnel:
            return None
        merged = dict(funnel.answers or {})
        merged.update(updates)
        # Reassign so the JSON column is flagged dirty.
        funnel.answers = merged
        return self.save(funnel)
