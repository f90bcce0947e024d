from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from orbs.database import get_db
from orbs.worker.orbs_worker import OrbsWorker


def get_orbs_worker(request: Request) -> OrbsWorker:
    """The worker is built once in the lifespan and stored on app.state."""
    return request.app.state.orbs_worker


DbSession = Annotated[AsyncSession, Depends(get_db)]
Worker = Annotated[OrbsWorker, Depends(get_orbs_worker)]
