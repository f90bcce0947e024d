"""Topic model.

Named subjects tracked by the orbs pipeline. Managed by the admin UI;
the pipeline only reads enabled topics in sort order.
"""

import uuid
from typing import Optional

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

SENTIMENT_SLUG = "news-sentiment"


class Topic(Base):
    __tablename__ = "topics"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    orb_color: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    cadence_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default="true"
    )
    uses_sentiment_color: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")

    @property
    def wants_sentiment(self) -> bool:
        # Older topics predate the column; the sentiment orb is keyed by slug
        return bool(self.uses_sentiment_color) or self.slug == SENTIMENT_SLUG
