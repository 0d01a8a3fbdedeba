"""SQLAlchemy 拡張と共通ヘルパー"""
import uuid

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def new_id() -> str:
    return str(uuid.uuid4())
