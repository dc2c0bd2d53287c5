"""
Remote file naming convention.

Main payload:        {prefix}-backup-{YYYY-MM-DD}.enc
Attachment archive:  {prefix}-attachments-{YYYY-MM-DD}.zip.enc
Metadata mirror:     {prefix}-metadata.json
"""

import re
from datetime import date, datetime
from typing import Optional, Union


DATE_TOKEN_RE = re.compile(r'\d{4}-\d{2}-\d{2}')


def date_token(when: Union[date, datetime, None] = None) -> str:
    """Return the YYYY-MM-DD token for `when` (default: today, UTC)."""
    when = when or datetime.utcnow()
    return when.strftime('%Y-%m-%d')


def backup_file_name(prefix: str, when: Union[date, datetime, None] = None) -> str:
    return f"{prefix}-backup-{date_token(when)}.enc"


def attachments_file_name(prefix: str, when: Union[date, datetime, None] = None) -> str:
    return f"{prefix}-attachments-{date_token(when)}.zip.enc"


def metadata_file_name(prefix: str) -> str:
    return f"{prefix}-metadata.json"


def extract_date_token(file_name: str) -> Optional[str]:
    match = DATE_TOKEN_RE.search(file_name or '')
    return match.group(0) if match else None


def is_main_backup(file_name: str, prefix: str) -> bool:
    """True for main payload files (not attachment archives or the metadata mirror)."""
    return (
        file_name.startswith(f"{prefix}-backup-")
        and file_name.endswith('.enc')
        and 'attachments' not in file_name
        and 'metadata' not in file_name
    )


def is_attachments_archive(file_name: str, prefix: str) -> bool:
    return file_name.startswith(f"{prefix}-attachments-") and file_name.endswith('.zip.enc')
