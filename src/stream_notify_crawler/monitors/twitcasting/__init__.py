"""TwitCasting live monitor."""
