"""Server side: SQLAlchemy store, FastAPI application and scheduler."""
