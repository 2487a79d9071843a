"""repo-conductor: multi-phase issue workflow orchestration."""

__version__ = "0.1.0"
