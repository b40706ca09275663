"""Rendering service (FastAPI)."""
