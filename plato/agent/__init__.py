"""Session-facing compaction service and token budgeting."""
