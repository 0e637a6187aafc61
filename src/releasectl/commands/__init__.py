"""Command groups for releasectl."""
