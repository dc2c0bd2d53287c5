from datetime import datetime
from flask_login import UserMixin
from agendavault import db


class User(UserMixin, db.Model):
    """User model for authentication"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<User {self.username}>'


class StorageSettings(db.Model):
    """Remote storage configuration (S3 credentials encrypted with the master key)"""
    __tablename__ = 'storage_settings'

    id = db.Column(db.Integer, primary_key=True)
    access_key_encrypted = db.Column(db.Text, nullable=False)
    secret_key_encrypted = db.Column(db.Text, nullable=False)
    bucket_name = db.Column(db.String(255), nullable=False)
    region = db.Column(db.String(50), nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<StorageSettings bucket={self.bucket_name} region={self.region}>'


class Record(db.Model):
    """One CRM record (client, appointment, task, ...) stored as JSON"""
    __tablename__ = 'records'
    __table_args__ = (
        db.UniqueConstraint('collection', 'record_id', name='uq_records_collection_record_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    collection = db.Column(db.String(50), nullable=False, index=True)
    record_id = db.Column(db.String(100), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)  # Preserves collection order
    data = db.Column(db.Text, nullable=False)  # JSON string
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<Record {self.collection}/{self.record_id}>'


class LocalSetting(db.Model):
    """Durable key/value store (metadata registry, preferences, app settings)"""
    __tablename__ = 'local_settings'

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<LocalSetting {self.key}>'
