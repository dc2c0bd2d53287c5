"""
Local data store for CRM records and the durable key/value settings store.

LocalDataStore keeps every collection (clients, appointments, tasks, ...) as
ordered JSON records in the `records` table. SettingsStore is the durable
key/value store used for app settings, backup preferences and the backup
metadata registry.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

from agendavault import db
from agendavault.models import Record, LocalSetting


logger = logging.getLogger(__name__)

COLLECTIONS = ('clients', 'appointments', 'tasks', 'categories', 'interactions')

# App settings carried inside backups (restored with the data)
APP_SETTING_KEYS = ('clientTypes', 'theme', 'fontSize', 'language', 'currency')


class DataStoreError(Exception):
    """Raised when the local store cannot be read or written."""
    pass


class SettingsStore:
    """Durable string key/value store backed by the local_settings table."""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        setting = db.session.get(LocalSetting, key)
        if setting is None or setting.value is None:
            return default
        return setting.value

    def set(self, key: str, value: Optional[str], commit: bool = True):
        setting = db.session.get(LocalSetting, key)
        if setting is None:
            setting = LocalSetting(key=key, value=value)
            db.session.add(setting)
        else:
            setting.value = value
        if commit:
            db.session.commit()

    def delete(self, key: str):
        setting = db.session.get(LocalSetting, key)
        if setting is not None:
            db.session.delete(setting)
            db.session.commit()

    def get_json(self, key: str, default: Any = None) -> Any:
        """
        Read a JSON value.

        A corrupted value is logged and treated as missing.
        """
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Ignoring corrupted JSON setting: {key}")
            return default

    def set_json(self, key: str, value: Any):
        self.set(key, json.dumps(value))

    def get_bool(self, key: str, default: bool = True) -> bool:
        """Read a boolean flag stored as 'true'/'false'."""
        raw = self.get(key)
        if raw is None:
            return default
        return raw.strip().lower() != 'false'

    def set_bool(self, key: str, value: bool):
        self.set(key, 'true' if value else 'false')


class LocalDataStore:
    """
    CRUD access to record collections plus bulk import.

    Records are dicts; each has a string 'id' (generated when missing).
    """

    def __init__(self, settings: Optional[SettingsStore] = None):
        self.settings = settings or SettingsStore()

    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        rows = (Record.query
                .filter_by(collection=collection)
                .order_by(Record.position, Record.id)
                .all())
        return [json.loads(row.data) for row in rows]

    def get_by_id(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = Record.query.filter_by(collection=collection, record_id=str(record_id)).first()
        return json.loads(row.data) if row else None

    def add(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append a record to a collection.

        Returns:
            The stored record (with its id)
        """
        record = dict(record)
        record.setdefault('id', uuid.uuid4().hex)
        position = Record.query.filter_by(collection=collection).count()
        db.session.add(self._to_row(collection, record, position))
        db.session.commit()
        return record

    def update(self, collection: str, record_id: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Shallow-merge a patch into a record.

        Returns:
            The updated record, or None if it does not exist
        """
        row = Record.query.filter_by(collection=collection, record_id=str(record_id)).first()
        if row is None:
            return None
        record = json.loads(row.data)
        record.update(patch)
        record['id'] = row.record_id
        row.data = json.dumps(record)
        db.session.commit()
        return record

    def has_data(self) -> bool:
        """True if any client, appointment or task exists."""
        return Record.query.filter(
            Record.collection.in_(('clients', 'appointments', 'tasks'))
        ).first() is not None

    def get_settings(self) -> Dict[str, Optional[str]]:
        return {key: self.settings.get(key) for key in APP_SETTING_KEYS}

    def import_data(self, data: Dict[str, Any], replace: bool = True):
        """
        Import collections and settings.

        Args:
            data: Mapping of collection name to record list, plus optional 'settings'
            replace: Replace each imported collection entirely; otherwise merge
                     by record id with incoming records winning

        Raises:
            DataStoreError: If the import cannot be committed
        """
        try:
            for collection in COLLECTIONS:
                records = data.get(collection)
                if records is None:
                    continue
                if replace:
                    self._save_all(collection, records)
                else:
                    self._save_all(collection, self._merge(self.get_all(collection), records))

            # Settings are always replaced, never merged
            for key, value in (data.get('settings') or {}).items():
                if key in APP_SETTING_KEYS and value:
                    if not isinstance(value, str):
                        value = json.dumps(value)
                    self.settings.set(key, value, commit=False)

            db.session.commit()
        except DataStoreError:
            db.session.rollback()
            raise
        except Exception as e:
            db.session.rollback()
            raise DataStoreError(f"Failed to import data: {e}")

    def _save_all(self, collection: str, records: List[Dict[str, Any]]):
        Record.query.filter_by(collection=collection).delete()
        seen = set()
        for position, record in enumerate(records):
            if not isinstance(record, dict):
                raise DataStoreError(f"Invalid record in {collection}: {record!r}")
            record = dict(record)
            record.setdefault('id', uuid.uuid4().hex)
            if str(record['id']) in seen:
                logger.warning(f"Skipping duplicate {collection} record: {record['id']}")
                continue
            seen.add(str(record['id']))
            db.session.add(self._to_row(collection, record, position))
        db.session.flush()

    @staticmethod
    def _merge(existing: List[Dict[str, Any]], incoming: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        merged = {str(r.get('id')): r for r in existing}
        for record in incoming:
            if isinstance(record, dict) and 'id' in record:
                merged[str(record['id'])] = record
            else:
                merged[uuid.uuid4().hex] = record
        return list(merged.values())

    @staticmethod
    def _to_row(collection: str, record: Dict[str, Any], position: int) -> Record:
        return Record(
            collection=collection,
            record_id=str(record['id']),
            position=position,
            data=json.dumps(record)
        )
