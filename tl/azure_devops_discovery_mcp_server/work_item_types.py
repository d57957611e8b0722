"""Enabled work item type enumeration.

The primary path reads the formatted listing produced for the ``get_work_item_types``
tool, the same text an assistant sees, and recovers type names from it. Processes
with localized or heavily customized types are common, so the listing is also
scanned with supplementary patterns and a dictionary of common English and Spanish
type names. When the listing yields nothing the raw REST payload is read directly.
"""

import json
import re
from loguru import logger
from pydantic import ValidationError
from tl.azure_devops_discovery_mcp_server.dtos import ValueListDTO, WorkItemTypeDTO
from tl.azure_devops_discovery_mcp_server.gateway import (
    AzureDevOpsGateway,
    AzureDevOpsGatewayError,
)
from typing import Callable, Iterable, List, Optional, Set, Tuple
from urllib.parse import quote


# Tokens that show up in listings and payloads but are never type names
NON_TYPE_TOKENS = {
    'project',
    'team',
    'area',
    'iteration',
    'field',
    'state',
    'estado',
    'priority',
    'new',
    'active',
    'done',
    'closed',
    'removed',
    'resolved',
}

COMMON_TYPE_NAMES = (
    'Task',
    'Bug',
    'User Story',
    'Feature',
    'Epic',
    'Issue',
    'Test Case',
    'Historia',
    'Historia técnica',
    'Tarea',
    'Subtarea',
    'Riesgo',
    'Caso de prueba',
    'Épica',
)

_LETTERS = 'A-Za-zÁÉÍÓÚÜÑáéíóúüñ'
_VALID_NAME = re.compile(rf'^[{_LETTERS}\s\-_]+$')

_SUPPLEMENTARY_PATTERNS = (
    re.compile(rf'tipo\s+(?:de\s+)?work\s+item[s]?[: ]+([{_LETTERS} ]+)', re.IGNORECASE),
    re.compile(rf'work\s+item\s+type[s]?[: ]+([{_LETTERS} ]+)', re.IGNORECASE),
    re.compile(rf'"([{_LETTERS} ]+)"\s+type', re.IGNORECASE),
)

_NAME_FRAGMENT = re.compile(r'"name"\s*:\s*"([^"]+)"')

BULLETS = ('• ', '- ')
DISABLED_ANNOTATION = 'disabled'


def is_valid_type_candidate(name: str) -> bool:
    """Reject state names and generic nouns, and names outside the allowed alphabet."""
    candidate = name.strip()
    if len(candidate) < 2:
        return False
    if candidate.lower() in NON_TYPE_TOKENS:
        return False
    return bool(_VALID_NAME.match(candidate))


def format_work_item_types(project: str, types: Iterable[WorkItemTypeDTO]) -> str:
    """Render the work item type listing returned by the ``get_work_item_types`` tool."""
    types = sorted(types, key=lambda t: t.name.lower())
    lines = [f'Work Item Types ({len(types)}) in project "{project}":', '']
    for work_item_type in types:
        # Reference names are left out: they often hold the English name of a
        # localized type and would feed the common-name scan
        details = [f'{len(work_item_type.states)} states', f'{len(work_item_type.fields)} fields']
        if work_item_type.is_disabled:
            details.append(DISABLED_ANNOTATION)
        lines.append(f'• **{work_item_type.name}** ({", ".join(details)})')
    return '\n'.join(lines)


def parse_type_listing(text: str) -> Tuple[List[str], List[str]]:
    """Split a formatted listing into (enabled candidates, disabled names)."""
    enabled: List[str] = []
    disabled: List[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped.startswith(BULLETS):
            continue
        name = stripped[2:].strip()
        annotation = ''
        paren = name.find(' (')
        if paren > 0:
            annotation = name[paren:]
            name = name[:paren].strip()
        if name.startswith('**') and name.endswith('**') and len(name) > 4:
            name = name[2:-2].strip()
        if DISABLED_ANNOTATION in annotation.lower():
            disabled.append(name)
        elif is_valid_type_candidate(name) and name not in enabled:
            enabled.append(name)
    return enabled, disabled


def _contains_ci(names: Iterable[str], candidate: str) -> bool:
    lowered = candidate.lower()
    return any(name.lower() == lowered for name in names)


def enhance_type_detection(text: str, found: Set[str], excluded: Iterable[str] = ()) -> Set[str]:
    """Add types recovered by supplementary patterns and the common-name dictionary.

    Names already found (and ``excluded`` names) are masked before the dictionary
    scan so that a longer name such as "Historia técnica" does not also yield
    "Historia".
    """
    enhanced = set(found)
    excluded = list(excluded)

    for pattern in _SUPPLEMENTARY_PATTERNS:
        for match in pattern.finditer(text):
            candidate = match.group(1).strip()
            if (
                is_valid_type_candidate(candidate)
                and not _contains_ci(enhanced, candidate)
                and not _contains_ci(excluded, candidate)
            ):
                logger.debug(f'Additional work item type detected: {candidate}')
                enhanced.add(candidate)

    masked = text
    for name in sorted(set(enhanced) | set(excluded), key=len, reverse=True):
        masked = re.sub(rf'(?<!\w){re.escape(name)}(?!\w)', ' ', masked, flags=re.IGNORECASE)

    for common in COMMON_TYPE_NAMES:
        if _contains_ci(enhanced, common):
            continue
        if re.search(rf'(?<!\w){re.escape(common)}(?!\w)', masked, re.IGNORECASE):
            logger.debug(f'Common work item type added: {common}')
            enhanced.add(common)

    return enhanced


def extract_names_from_payload(text: str) -> Set[str]:
    """Enabled type names from a raw ``workitemtypes`` body."""
    try:
        envelope = ValueListDTO.model_validate(json.loads(text))
        types = [WorkItemTypeDTO.model_validate(item) for item in envelope.value]
        return {t.name for t in types if not t.is_disabled and is_valid_type_candidate(t.name)}
    except (ValueError, ValidationError) as e:
        # pydantic's ValidationError is a ValueError; both mean "not a typed payload"
        logger.warning(f'Work item type payload is not valid JSON, using text extraction: {e}')
        return {n for n in _NAME_FRAGMENT.findall(text) if is_valid_type_candidate(n)}


class WorkItemTypeEnumerator:
    """Determines the enabled work item types of a project."""

    def __init__(
        self,
        gateway: AzureDevOpsGateway,
        listing_provider: Optional[Callable[[str], str]] = None,
    ) -> None:
        """Initialize the enumerator.

        Args:
            gateway: Remote API gateway
            listing_provider: Callable returning the formatted type listing of a
                project; defaults to formatting the gateway's structured listing
        """
        self.gateway = gateway
        self.listing_provider = listing_provider or self._default_listing

    def _default_listing(self, project: str) -> str:
        return format_work_item_types(project, self.gateway.get_work_item_types(project))

    def _from_listing(self, project: str) -> Set[str]:
        try:
            text = self.listing_provider(project)
        except (AzureDevOpsGatewayError, ValueError) as e:
            logger.warning(f'Could not get the work item type listing for {project}: {str(e)}')
            return set()

        enabled, disabled = parse_type_listing(text)
        logger.info(f'Extracted {len(enabled)} work item types from the listing of {project}')
        if not enabled:
            return set()
        # The listing header names the project, which must not feed the dictionary scan
        return enhance_type_detection(text, set(enabled), excluded=disabled + [project])

    def _from_direct_api(self, project: str) -> Set[str]:
        try:
            text = self.gateway.get(f'{quote(project, safe="")}/_apis/wit/workitemtypes')
        except AzureDevOpsGatewayError as e:
            logger.warning(f'Direct work item type query failed for {project}: {str(e)}')
            return set()
        return extract_names_from_payload(text)

    def list_enabled_types(self, project: str) -> Set[str]:
        """Enabled work item type names; empty when they cannot be determined."""
        types = self._from_listing(project)
        if not types:
            logger.warning(f'No work item types found in the listing of {project}, trying API')
            types = self._from_direct_api(project)

        if types:
            logger.info(f'Work item types for {project}: {", ".join(sorted(types))}')
        else:
            logger.error(f'Could not determine the work item types of project {project}')
        return types
