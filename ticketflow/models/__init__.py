"""
Ticketflow — SQLAlchemy models.

``db`` is the single Flask-SQLAlchemy handle; model modules import it from
here and the app factory calls ``db.init_app(app)``.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
