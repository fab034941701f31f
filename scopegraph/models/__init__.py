"""
scopegraph model package.

All tables share a single Flask-SQLAlchemy instance so services can use
``db.session`` inside an application context.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
