"""tabsync - storage core of the tab-synchronization backend."""

__version__ = "0.1.0"
