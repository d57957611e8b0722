"""Timestamped backup and restore of configuration files.

Backups live next to the original as ``<name>.backup_<yyyyMMdd_HHmmss>``. A second
backup requested within the same second gets a counter suffix (``_1``, ``_2``, ...)
so an existing backup is never overwritten. No method raises: every I/O error is
captured in the returned record.
"""

import logfire
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from loguru import logger
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union


BACKUP_MARKER = '.backup_'
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

_SUFFIX_PATTERN = re.compile(r'^(\d{8}_\d{6})(?:_(\d+))?$')


@dataclass
class BackupRecord:
    original_path: Path
    backup_path: Optional[Path]
    success: bool
    message: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'original_path': str(self.original_path),
            'backup_path': str(self.backup_path) if self.backup_path else None,
            'success': self.success,
            'message': self.message,
        }


@dataclass
class RestoreResult:
    original_path: Path
    backup_path: Optional[Path]
    success: bool
    message: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'original_path': str(self.original_path),
            'backup_path': str(self.backup_path) if self.backup_path else None,
            'success': self.success,
            'message': self.message,
        }


def _backup_sort_key(backup: Path, prefix: str) -> Tuple[str, int]:
    suffix = backup.name[len(prefix) :]
    match = _SUFFIX_PATTERN.match(suffix)
    if match is None:
        return suffix, 0
    return match.group(1), int(match.group(2) or 0)


class ConfigurationBackup:
    """Backup, listing and restore of configuration files."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self.clock = clock

    def backup(self, path: Union[str, Path]) -> BackupRecord:
        """Copy ``path`` to a new timestamped backup next to it."""
        original = Path(path)
        if not original.exists():
            logger.warning(f'Skipping backup of {original}: file does not exist')
            return BackupRecord(original, None, False, 'File does not exist')

        try:
            stamp = self.clock().strftime(TIMESTAMP_FORMAT)
            target = original.with_name(f'{original.name}{BACKUP_MARKER}{stamp}')
            counter = 0
            while target.exists():
                counter += 1
                target = original.with_name(f'{original.name}{BACKUP_MARKER}{stamp}_{counter}')

            shutil.copy2(original, target)
        except OSError as e:
            error_message = f'Failed to back up {original}: {str(e)}'
            logger.error(error_message)
            logfire.error('Configuration backup failed', path=str(original), error=str(e))
            return BackupRecord(original, None, False, error_message)

        logger.info(f'Backed up {original} to {target.name}')
        logfire.info('Configuration backup created', path=str(original), backup=str(target))
        return BackupRecord(original, target, True, 'Backup created')

    def backup_files(self, paths: Iterable[Union[str, Path]]) -> List[BackupRecord]:
        return [self.backup(path) for path in paths]

    def list_backups(self, path: Union[str, Path]) -> List[Path]:
        """Backups of ``path``, most recent first."""
        original = Path(path)
        prefix = f'{original.name}{BACKUP_MARKER}'
        try:
            candidates = [
                p for p in original.parent.iterdir() if p.is_file() and p.name.startswith(prefix)
            ]
        except OSError as e:
            logger.warning(f'Could not list backups of {original}: {str(e)}')
            return []
        return sorted(candidates, key=lambda p: _backup_sort_key(p, prefix), reverse=True)

    def has_backup(self, path: Union[str, Path]) -> bool:
        return bool(self.list_backups(path))

    def restore_from_backup(self, path: Union[str, Path]) -> RestoreResult:
        """Copy the most recent backup back over ``path``."""
        original = Path(path)
        backups = self.list_backups(original)
        if not backups:
            logger.warning(f'No backups available for {original}')
            return RestoreResult(original, None, False, 'No backups available')

        latest = backups[0]
        try:
            shutil.copy2(latest, original)
        except OSError as e:
            error_message = f'Failed to restore {original} from {latest.name}: {str(e)}'
            logger.error(error_message)
            logfire.error('Configuration restore failed', path=str(original), error=str(e))
            return RestoreResult(original, latest, False, error_message)

        logger.info(f'Restored {original} from {latest.name}')
        logfire.info('Configuration restored', path=str(original), backup=str(latest))
        return RestoreResult(original, latest, True, f'Restored from {latest.name}')

    def generate_backup_report(self, records: Iterable[BackupRecord]) -> str:
        records = list(records)
        created = [r for r in records if r.success]
        lines = ['# Configuration Backup Report', '']
        lines.append(f'Backups created: {len(created)} of {len(records)} files')
        lines.append('')
        for record in records:
            if record.success:
                lines.append(f'- OK   {record.original_path} -> {record.backup_path.name}')
            else:
                lines.append(f'- SKIP {record.original_path}: {record.message}')
        return '\n'.join(lines)
