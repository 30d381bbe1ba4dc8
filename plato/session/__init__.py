"""Session module for caller-owned transcripts."""
