"""Audit trail for PawnSys.

Every state-changing operation appends one entry. Entries are never edited
or removed; the list is returned newest first.
"""
import json
import logging

import pandas as pd

from pawnsys.config import STORAGE_KEYS, AUDIT_ID_PREFIX
from pawnsys.calculations import resolve_now, to_datetime

logger = logging.getLogger(__name__)

# Actions
CREATE = "create"
UPDATE = "update"
PLEDGE_CREATE = "pledge_create"
PLEDGE_UPDATE = "pledge_update"
RENEWAL = "renewal"
REDEMPTION = "redemption"
FORFEIT = "forfeit"
AUCTION = "auction"
DAY_CLOSE = "day_close"
DAY_REOPEN = "day_reopen"
SETTINGS_CHANGE = "settings_change"

EXPORT_COLUMNS = ["id", "timestamp", "user", "action", "module", "description", "details"]


class AuditLogger:
    """Appends and queries audit entries in the ``audit_logs`` collection."""

    def __init__(self, storage):
        self.storage = storage

    def _load(self):
        return self.storage.get(STORAGE_KEYS['audit_logs'], [])

    def _next_id(self, logs):
        max_num = 0
        for entry in logs:
            try:
                num = int(entry['id'].split('-')[1])
                if num > max_num:
                    max_num = num
            except (KeyError, IndexError, ValueError):
                pass
        return f"{AUDIT_ID_PREFIX}-{max_num + 1:08d}"

    def log(self, action, module, description, details=None, user="System", now=None):
        """Append an entry and return it.

        Args:
            action: Action code, e.g. RENEWAL.
            module: Area of the application ("pledge", "customer", ...).
            description: Human-readable summary.
            details: JSON-serializable dict of specifics.
            user: Name of the acting staff member.
            now: Timestamp of the action (defaults to now).
        """
        logs = self._load()
        entry = {
            'id': self._next_id(logs),
            'timestamp': resolve_now(now).isoformat(),
            'user': user,
            'action': action,
            'module': module,
            'description': description,
            'details': details or {},
        }
        logs.append(entry)
        self.storage.set(STORAGE_KEYS['audit_logs'], logs)
        logger.debug(f"Audit {entry['id']}: {action} {description}")
        return entry

    def get_logs(self, module=None, action=None, user=None, start=None, end=None):
        """Entries matching every given filter, newest first."""
        start = to_datetime(start, "start") if start is not None else None
        end = to_datetime(end, "end") if end is not None else None

        result = []
        for entry in self._load():
            if module and entry.get('module') != module:
                continue
            if action and entry.get('action') != action:
                continue
            if user and entry.get('user') != user:
                continue
            stamp = to_datetime(entry['timestamp'], "timestamp")
            if start and stamp < start:
                continue
            if end and stamp > end:
                continue
            result.append(entry)

        result.sort(key=lambda e: e['timestamp'], reverse=True)
        return result

    def get_logs_df(self, **filters):
        logs = self.get_logs(**filters)
        df = pd.DataFrame(logs, columns=EXPORT_COLUMNS)
        if not df.empty:
            df['details'] = df['details'].apply(lambda d: json.dumps(d, sort_keys=True))
        return df

    def export_csv(self, path, **filters):
        """Write matching entries to CSV. Returns the number of rows written."""
        df = self.get_logs_df(**filters)
        df.to_csv(path, index=False)
        logger.info(f"Exported {len(df)} audit entries to {path}")
        return len(df)
