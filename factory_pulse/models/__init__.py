"""
Factory Pulse Workflow Engine
Shared SQLAlchemy handle.

Usage:
    from factory_pulse.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
