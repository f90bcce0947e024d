"""Orb snapshot listing endpoint.

GET /api/v1/orbs -- current snapshot for every enabled topic, in display order.
"""

from fastapi import APIRouter
from sqlalchemy import select

from orbs.dependencies import DbSession
from orbs.models.orb_snapshot import OrbSnapshot
from orbs.models.topic import Topic
from orbs.schemas.orbs import OrbSnapshotResponse

router = APIRouter(prefix="/api/v1", tags=["orbs"])


@router.get("/orbs")
async def list_orbs(db: DbSession) -> dict:
    """Return the latest snapshot per topic.

    Topics that have never completed a run have no snapshot and are omitted.
    """
    result = await db.execute(
        select(OrbSnapshot, Topic.slug, Topic.name)
        .join(Topic, Topic.id == OrbSnapshot.topic_id)
        .where(Topic.is_enabled.is_(True))
        .order_by(Topic.sort_order.asc(), Topic.slug.asc())
    )
    orbs = []
    for snap, slug, name in result.all():
        orbs.append(
            OrbSnapshotResponse(
                topic_id=snap.topic_id,
                slug=slug,
                name=name,
                keywords=list(snap.keywords or []),
                sentiment_label=snap.sentiment_label,
                resting_color=snap.resting_color,
                display_color=snap.display_color,
                velocity=snap.velocity,
                volume=snap.volume,
                diversity=snap.diversity,
                top_sources=snap.top_sources or [],
                top_items=snap.top_items or [],
                label_status=snap.label_status,
                window_end=snap.window_end,
                window_minutes=snap.window_minutes,
                updated_at=snap.updated_at,
            ).model_dump(mode="json")
        )
    return {"orbs": orbs}
