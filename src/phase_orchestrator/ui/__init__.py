"""User-facing command-line surface."""
