# Overview: Flask extension instances.

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
