"""Read-only aggregates over what the calling actor is allowed to see.

Every figure is computed on the visibility-filtered row set, so a SALES user's
overview only counts their own leads and a team-less manager sees zeros. The
user head-count is an organisation-wide number and is only reported to admins.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crmtrail.audit.store import history_store
from crmtrail.crm.models import Activity, Contact, Deal, Lead, Task, User
from crmtrail.crm.schemas import ChangeRecordRead, ContactRead, DealRead, TaskRead
from crmtrail.otel import get_tracer
from crmtrail.security.context import Actor
from crmtrail.security.visibility import apply_visibility_filter


tracer = get_tracer("crmtrail.analytics")

CLOSED_WON = "closed_won"


def _percentage(part: int, whole: int) -> int:
    if not whole:
        return 0
    return int((Decimal(part) * 100 / Decimal(whole)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class AnalyticsService:
    def overview(self, session: Session, actor: Actor) -> dict[str, Any]:
        with tracer.start_as_current_span("crmtrail.analytics.overview"):
            lead_ids = list(session.scalars(apply_visibility_filter(select(Lead.id), actor, Lead.owner_id)).all())

            total_activities = session.scalar(
                apply_visibility_filter(select(func.count(Activity.id)), actor, Activity.user_id)
            )

            stage_rows = session.execute(
                apply_visibility_filter(select(Lead.stage, func.count(Lead.id)), actor, Lead.owner_id)
                .group_by(Lead.stage)
                .order_by(Lead.stage)
            ).all()

            lead_count = func.count(Lead.id).label("lead_count")
            performer_rows = session.execute(
                apply_visibility_filter(
                    select(Lead.owner_id, lead_count, User.name, User.email).join(User, User.id == Lead.owner_id),
                    actor,
                    Lead.owner_id,
                )
                .group_by(Lead.owner_id, User.name, User.email)
                .order_by(lead_count.desc(), Lead.owner_id.asc())
                .limit(5)
            ).all()

            # Admins also see history of deleted leads; everyone else only rows of leads still visible to them.
            scope = None if actor.is_admin else lead_ids
            total_histories = history_store.count(session, "lead", entity_ids=scope)
            recent = history_store.list_recent(session, "lead", entity_ids=scope, limit=10)

            summary: dict[str, Any] = {
                "total_leads": len(lead_ids),
                "total_activities": int(total_activities or 0),
                "total_histories": total_histories,
            }
            if actor.is_admin:
                summary["total_users"] = int(session.scalar(select(func.count(User.id))) or 0)

            return {
                "summary": summary,
                "leads_by_stage": [{"stage": stage, "count": count} for stage, count in stage_rows],
                "top_performers": [
                    {"owner_id": owner_id, "lead_count": count, "user": {"name": name, "email": email}}
                    for owner_id, count, name, email in performer_rows
                ],
                "recent_histories": self._describe_histories(session, recent),
            }

    def dashboard(self, session: Session, actor: Actor) -> dict[str, Any]:
        with tracer.start_as_current_span("crmtrail.analytics.dashboard"):
            contacts = self._visible(session, actor, Contact)
            deals = self._visible(session, actor, Deal)
            tasks = self._visible(session, actor, Task)

            open_deals = [deal for deal in deals if "closed" not in str(deal.stage).lower()]
            won_deals = [deal for deal in deals if str(deal.stage).lower() == CLOSED_WON]
            stats = {
                "total_contacts": len(contacts),
                "active_deals": len(open_deals),
                "total_revenue": float(sum((deal.value or Decimal("0") for deal in won_deals), Decimal("0"))),
                "pipeline": float(sum((deal.value or Decimal("0") for deal in open_deals), Decimal("0"))),
                "pending_tasks": sum(1 for task in tasks if str(task.status).lower() != "completed"),
                "conversion_rate": _percentage(len(won_deals), len(deals)),
            }
            return {
                "stats": stats,
                "contacts": [ContactRead.model_validate(contact).model_dump(mode="json") for contact in contacts],
                "deals": [DealRead.model_validate(deal).model_dump(mode="json") for deal in deals],
                "tasks": [TaskRead.model_validate(task).model_dump(mode="json") for task in tasks],
            }

    def _visible(self, session: Session, actor: Actor, model: Any) -> list[Any]:
        stmt = apply_visibility_filter(select(model), actor, model.owner_id)
        return list(session.scalars(stmt.order_by(model.created_at.desc(), model.id.desc())).all())

    def _describe_histories(self, session: Session, records: list[Any]) -> list[dict[str, Any]]:
        lead_names = dict(
            session.execute(select(Lead.id, Lead.name).where(Lead.id.in_(sorted({r.entity_id for r in records})))).all()
        )
        user_names = dict(
            session.execute(select(User.id, User.name).where(User.id.in_(sorted({r.changed_by for r in records})))).all()
        )
        described = []
        for record in records:
            item = ChangeRecordRead.model_validate(record).model_dump(mode="json")
            item["entity_name"] = lead_names.get(record.entity_id)
            item["changed_by_name"] = user_names.get(record.changed_by)
            described.append(item)
        return described


analytics_service = AnalyticsService()
