"""YouTube monitor and members-only marker probe."""
