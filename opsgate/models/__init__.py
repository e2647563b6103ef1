"""
OpsGate — SQLAlchemy models.

The shared ``db`` handle lives here so every model module can import it
without touching the application factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
