# Overview: Flask-SQLAlchemy and Flask-Migrate instances shared by models, repositories and the CLI.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()

# SQLite is the default database; batch mode lets Alembic alter its tables
migrate = Migrate(compare_type=True, render_as_batch=True)
