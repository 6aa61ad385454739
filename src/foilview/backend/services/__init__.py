# foilview/backend/services/__init__.py
"""Service layer for stage orchestration."""

from foilview.backend.services.base import BaseService
from foilview.backend.services.stage_service import MoveResult, MultiAxisResult, StageMotionController

__all__ = [
    "BaseService",
    "MoveResult",
    "MultiAxisResult",
    "StageMotionController",
]
