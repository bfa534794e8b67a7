"""Twitter/X Spaces live-audio monitor."""
