from __future__ import annotations

from gradely.storage.base import GradingStore, SubmissionRecord
from gradely.storage.sql import SqlGradingStore

grading_store: GradingStore = SqlGradingStore()

__all__ = ["GradingStore", "SqlGradingStore", "SubmissionRecord", "grading_store"]
