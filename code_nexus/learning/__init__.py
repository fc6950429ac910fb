"""Incremental learning: the learner and its task queue."""

from .learner import IncrementalLearner
from .queue import LearningQueue, LearningTask

__all__ = ["IncrementalLearner", "LearningQueue", "LearningTask"]
