"""plato - conversation compaction for terminal AI assistants."""

__version__ = "0.1.0"
__logo__ = "🏛"
