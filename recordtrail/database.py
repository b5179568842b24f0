"""Declarative base for the version models.

Engines and sessions belong to the host application; versions are written
through whatever session flushes the tracked records.
"""
from sqlalchemy.orm import declarative_base

Base = declarative_base()
