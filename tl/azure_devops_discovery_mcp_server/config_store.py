"""On-disk configuration store for discovered organization documents.

Documents are YAML files in a single configuration directory. The store is the only
owner of the ``DiscoveredOrganization`` instance: investigations borrow it through
``transaction()``, which holds a lock shared by every store pointing at the same
directory for the whole load, merge and persist sequence.
"""

import logfire
import os
import tempfile
import threading
import yaml
from contextlib import contextmanager
from loguru import logger
from pathlib import Path
from tl.azure_devops_discovery_mcp_server.organization import (
    DYNAMIC_FROM_SOURCE,
    LEGACY_DYNAMIC_MARKERS,
    DiscoveredOrganization,
)
from typing import Any, Callable, Dict, Iterator, List, Optional, Union


ORGANIZATION_DOCUMENT = 'discovered-organization.yml'
FIELD_MAPPINGS_DOCUMENT = 'field-mappings.yml'
ORGANIZATION_CONFIG_DOCUMENT = 'organization-config.yml'
BUSINESS_RULES_DOCUMENT = 'business-rules.yml'

DEFAULT_CONFIG_DIR = 'config'

_DIRECTORY_LOCKS: Dict[str, threading.RLock] = {}
_DIRECTORY_LOCKS_GUARD = threading.Lock()


class ConfigurationPersistError(Exception):
    """Raised when a configuration document cannot be written."""

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


def _directory_lock(config_dir: Path) -> threading.RLock:
    key = str(config_dir.resolve())
    with _DIRECTORY_LOCKS_GUARD:
        lock = _DIRECTORY_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _DIRECTORY_LOCKS[key] = lock
        return lock


def read_yaml_document(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping, degrading to an empty document on any read error."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding='utf-8'))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
        logger.warning(f'Could not read configuration document {path}: {str(e)}')
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(f'Configuration document {path} is not a mapping, ignoring it')
        return {}
    return data


def write_yaml_document(path: Path, data: Dict[str, Any]) -> None:
    """Atomically replace ``path`` with ``data`` rendered as YAML."""
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        content = yaml.safe_dump(
            data, default_flow_style=False, sort_keys=False, allow_unicode=True
        )
        with tempfile.NamedTemporaryFile(
            'w',
            encoding='utf-8',
            dir=path.parent,
            prefix=f'.{path.name}.',
            suffix='.tmp',
            delete=False,
        ) as handle:
            tmp_name = handle.name
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationPersistError(
            f'Failed to write configuration document {path}: {str(e)}', path=path
        ) from e
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)


class ConfigurationStore:
    """Read-through cache over the configuration documents of one directory."""

    def __init__(
        self,
        config_dir: Optional[Union[str, Path]] = None,
        value_resolver: Optional[Callable[[str], List[str]]] = None,
    ) -> None:
        """Initialize the store.

        Args:
            config_dir: Directory holding the documents, defaults to
                ``AZURE_DEVOPS_CONFIG_DIR`` or ``config``
            value_resolver: Callback resolving allowed values for a field reference
                name, used for ``@DYNAMIC_FROM_SOURCE`` mappings
        """
        self.config_dir = Path(
            config_dir or os.environ.get('AZURE_DEVOPS_CONFIG_DIR', DEFAULT_CONFIG_DIR)
        )
        self.value_resolver = value_resolver
        self._lock = _directory_lock(self.config_dir)
        self._organization: Optional[DiscoveredOrganization] = None
        self._field_mappings: Optional[Dict[str, Any]] = None

    def document_paths(self) -> Dict[str, Path]:
        """Paths of the documents written by the store."""
        return {
            'organization': self.config_dir / ORGANIZATION_DOCUMENT,
            'field_mappings': self.config_dir / FIELD_MAPPINGS_DOCUMENT,
            'organization_config': self.config_dir / ORGANIZATION_CONFIG_DOCUMENT,
        }

    def known_configuration_files(self) -> List[Path]:
        """Every configuration file covered by backups, including user-maintained ones."""
        return list(self.document_paths().values()) + [self.config_dir / BUSINESS_RULES_DOCUMENT]

    # ------------------------------------------------------------------
    # Organization document
    # ------------------------------------------------------------------

    def _read_organization(self) -> DiscoveredOrganization:
        data = read_yaml_document(self.document_paths()['organization'])
        return DiscoveredOrganization.from_dict(data)

    def load(self) -> DiscoveredOrganization:
        """Return the cached organization document, reading it on first use."""
        with self._lock:
            if self._organization is None:
                self._organization = self._read_organization()
                logger.info(
                    f'Loaded organization configuration from {self.config_dir} '
                    f'({len(self._organization.work_item_types)} work item types)'
                )
            return self._organization

    def reload(self) -> DiscoveredOrganization:
        """Drop the cache and read the documents again."""
        with self._lock:
            self.invalidate()
            return self.load()

    def invalidate(self) -> None:
        with self._lock:
            self._organization = None
            self._field_mappings = None

    def save(self, organization: DiscoveredOrganization) -> List[Path]:
        """Persist all documents derived from ``organization``.

        Returns:
            The written paths

        Raises:
            ConfigurationPersistError: if any document cannot be written
        """
        paths = self.document_paths()
        documents = [
            (paths['organization'], organization.to_dict()),
            (paths['field_mappings'], organization.field_mappings_document()),
            (paths['organization_config'], organization.organization_config_document()),
        ]
        with self._lock:
            written = []
            try:
                for path, data in documents:
                    write_yaml_document(path, data)
                    written.append(path)
            except ConfigurationPersistError as e:
                logger.error(str(e))
                logfire.error(
                    'Failed to persist configuration', path=str(e.path), error=str(e)
                )
                self.invalidate()
                raise

            # Detached copy so later transactions never share the caller's instance
            self._organization = DiscoveredOrganization.from_dict(organization.to_dict())
            self._field_mappings = None

        logger.info(f'Persisted {len(written)} configuration documents to {self.config_dir}')
        logfire.info(
            'Persisted configuration',
            config_dir=str(self.config_dir),
            files=[str(p) for p in written],
        )
        return written

    @contextmanager
    def transaction(self) -> Iterator[DiscoveredOrganization]:
        """Hold the directory lock across load, merge and persist.

        Yields a freshly read organization document. It is persisted when the block
        exits normally; if the block raises, nothing is written.
        """
        with self._lock:
            organization = self._read_organization()
            yield organization
            self.save(organization)

    # ------------------------------------------------------------------
    # Field mappings
    # ------------------------------------------------------------------

    def load_field_mappings(self) -> Dict[str, Any]:
        with self._lock:
            if self._field_mappings is None:
                data = read_yaml_document(self.document_paths()['field_mappings'])
                mappings = data.get('fieldMappings')
                if not isinstance(mappings, dict):
                    mappings = self.load().field_mappings_document()['fieldMappings']
                self._field_mappings = mappings
            return self._field_mappings

    def get_field_mapping(self, name: str) -> Dict[str, Any]:
        """Mapping by logical name or by Azure DevOps reference name."""
        mappings = self.load_field_mappings()
        mapping = mappings.get(name)
        if isinstance(mapping, dict):
            return dict(mapping)
        for candidate in mappings.values():
            if isinstance(candidate, dict) and candidate.get('azureFieldName') == name:
                return dict(candidate)
        return {}

    def get_allowed_values(
        self, name: str, value_resolver: Optional[Callable[[str], List[str]]] = None
    ) -> List[str]:
        """Allowed values of a mapped field, resolving dynamic mappings on demand.

        ``value_resolver`` overrides the resolver given to the store for this call.
        """
        mapping = self.get_field_mapping(name)
        allowed = mapping.get('allowedValues')

        if isinstance(allowed, list):
            return [str(v) for v in allowed]

        if isinstance(allowed, str) and allowed in (DYNAMIC_FROM_SOURCE,) + LEGACY_DYNAMIC_MARKERS:
            reference_name = mapping.get('azureFieldName', name)
            resolver = value_resolver or self.value_resolver
            if resolver is None:
                logger.warning(
                    f'Field {reference_name} uses {allowed} but no value resolver is configured'
                )
                return []
            values = resolver(reference_name)
            logger.info(f'Resolved {len(values)} dynamic values for field {reference_name}')
            return list(values)

        return []
