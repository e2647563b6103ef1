"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
    flask seed-roles
    flask db migrate -m "description"
"""

from opsgate import create_app

app = create_app()
