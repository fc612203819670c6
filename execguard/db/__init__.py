"""
Database Package
================

Exports key database components.
"""

from execguard.db.models import (
    Base,
    LessonModel,
    TaskHistoryModel,
    PendingApprovalModel,
)
from execguard.db.connection import Database, init_db
