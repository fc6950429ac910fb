"""
Code Nexus - incremental code intelligence across repositories.

Two subsystems:
- IncrementalLearner: turns version-control changes into audited updates
  of a repository's concept and pattern index
- CrossProjectService / PatternAggregator: consolidates patterns from many
  repositories and scores how widely and consistently they are used
"""

__version__ = "0.1.0"

from .config import NexusConfig
from .core import GlobalStore, ProjectStore
from .crossproject import CrossProjectService
from .errors import NexusError
from .learning import IncrementalLearner
from .patterns import PatternAggregator
from .sources import GitChangeSource, LexicalOracle

__all__ = [
    "NexusConfig",
    "NexusError",
    "ProjectStore",
    "GlobalStore",
    "IncrementalLearner",
    "PatternAggregator",
    "CrossProjectService",
    "GitChangeSource",
    "LexicalOracle",
]
