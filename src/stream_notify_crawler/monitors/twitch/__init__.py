"""Twitch live-stream monitor."""
