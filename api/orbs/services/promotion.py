"""Label promotion state machine.

  candidate -> promoted   bootstrap: first label for a topic, or two
                          consecutive labels with the same output hash
  promoted  -> stale      superseded by a newer promoted label
  candidate -> stale      the older half of a matching pair
  rejected                reserved; never assigned

Requiring two independent generations to agree filters single-shot model
noise without a fixed-window vote. At most one label per topic is
promoted at any time.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import structlog

from orbs.metrics import promotions_total
from orbs.models.orb_label import LabelStatus

log = structlog.get_logger(__name__)


class PromotionPath(str, enum.Enum):
    BOOTSTRAP = "bootstrap"
    STABLE = "stable"
    UNSTABLE = "unstable"


class _LabelRow(Protocol):
    id: uuid.UUID
    output_hash: Optional[str]


@dataclass(frozen=True)
class PromotionDecision:
    path: PromotionPath
    promote_id: Optional[uuid.UUID] = None
    superseded_id: Optional[uuid.UUID] = None


def decide_promotion(
    new_label_id: uuid.UUID,
    has_promoted: bool,
    latest_two: Sequence[_LabelRow],
) -> PromotionDecision:
    """Pure decision over the two most recent labels (newest first)."""
    if not has_promoted:
        return PromotionDecision(PromotionPath.BOOTSTRAP, promote_id=new_label_id)

    if len(latest_two) == 2:
        newest, previous = latest_two[0], latest_two[1]
        if newest.output_hash and previous.output_hash and newest.output_hash == previous.output_hash:
            return PromotionDecision(
                PromotionPath.STABLE,
                promote_id=newest.id,
                superseded_id=previous.id,
            )

    return PromotionDecision(PromotionPath.UNSTABLE)


class PromotionStateMachine:
    def __init__(self, store) -> None:
        self.store = store

    async def resolve(
        self,
        topic_id: uuid.UUID,
        new_label_id: uuid.UUID,
        has_promoted: bool,
    ) -> LabelStatus:
        """Apply the promotion rule after a candidate insert.

        Returns the resulting status of the new label. Store failures
        propagate and fail the topic run.
        """
        latest_two: Sequence[_LabelRow] = []
        if has_promoted:
            latest_two = await self.store.latest_labels(topic_id, limit=2)

        decision = decide_promotion(new_label_id, has_promoted, latest_two)
        if decision.promote_id is None:
            promotions_total.labels(path=decision.path.value).inc()
            return LabelStatus.candidate

        promoted = await self.store.promote_label(
            topic_id, decision.promote_id, superseded_id=decision.superseded_id
        )
        if not promoted:
            # A concurrent run changed the label first; leave it unproven
            log.warning("label_promotion_lost_race", topic_id=str(topic_id),
                        label_id=str(decision.promote_id))
            promotions_total.labels(path="lost_race").inc()
            return LabelStatus.candidate

        promotions_total.labels(path=decision.path.value).inc()
        log.info(
            "label_promoted",
            topic_id=str(topic_id),
            label_id=str(decision.promote_id),
            path=decision.path.value,
        )
        return LabelStatus.promoted
