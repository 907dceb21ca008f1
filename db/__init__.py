"""Database package for the lead router."""
from db.connection import dispose_engine, get_db, init_engine

__all__ = ["init_engine", "get_db", "dispose_engine"]
