"""Connection-based presence tracking."""
