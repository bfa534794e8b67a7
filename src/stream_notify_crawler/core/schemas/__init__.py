"""Pydantic schemas for everything the crawler puts on the wire."""
