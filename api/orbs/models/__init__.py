from .base import Base
from .topic import Topic
from .orb_run import OrbRun, RunStatus
from .orb_state import OrbState
from .orb_label import LabelStatus, OrbLabel
from .orb_snapshot import OrbSnapshot

__all__ = [
    "Base",
    "Topic",
    "OrbRun",
    "RunStatus",
    "OrbState",
    "LabelStatus",
    "OrbLabel",
    "OrbSnapshot",
]
