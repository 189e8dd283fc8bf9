"""HerdSync JSON API (FastAPI)."""
