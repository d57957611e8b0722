"""Field enumeration and free-text versus picklist classification."""

from loguru import logger
from tl.azure_devops_discovery_mcp_server.dtos import FieldDTO
from tl.azure_devops_discovery_mcp_server.gateway import (
    AzureDevOpsGateway,
    AzureDevOpsGatewayError,
)
from tl.azure_devops_discovery_mcp_server.organization import FieldDefinition, FieldStatus
from tl.azure_devops_discovery_mcp_server.wiql import build_wiql
from typing import Any, List, Optional


# Name fragments (Spanish and English) that suggest a string field holds an enumeration
PICKLIST_NAME_KEYWORDS = (
    'tipo',
    'type',
    'categoria',
    'category',
    'nivel',
    'level',
    'origen',
    'source',
    'fase',
    'phase',
    'estado',
    'status',
    'prioridad',
    'priority',
    'clasificacion',
    'classification',
)

SAMPLE_LIMIT = 20


def is_likely_picklist_field(reference_name: str) -> bool:
    """True when a custom field's name suggests an enumerated value list."""
    if reference_name.startswith(('System.', 'Microsoft.')):
        return False
    tail = reference_name.rsplit('.', 1)[-1].lower()
    return any(keyword in tail for keyword in PICKLIST_NAME_KEYWORDS)


def determine_field_type(field: FieldDTO) -> str:
    """Classify a field payload.

    Picklist evidence in the payload (``picklistId``, ``isPicklist`` or allowed values)
    wins over the declared type. String fields with an enumeration-like name are
    classified as candidate picklists.
    """
    base_type = field.type or 'string'
    if field.picklist_id or field.is_picklist or field.allowed_values:
        if base_type.lower().startswith('picklist'):
            return base_type
        return 'picklist' + base_type[0].upper() + base_type[1:]
    if base_type.lower() == 'string' and is_likely_picklist_field(field.reference_name):
        return 'picklistString'
    return base_type


def is_picklist_type(field_type: str) -> bool:
    return field_type.lower().startswith('picklist')


class FieldAnalyzer:
    """Enumerates the fields of a project or work item type and classifies them."""

    def __init__(self, gateway: AzureDevOpsGateway) -> None:
        self.gateway = gateway

    @staticmethod
    def to_definition(field: FieldDTO) -> FieldDefinition:
        field_type = determine_field_type(field)
        picklist = is_picklist_type(field_type)

        if not picklist:
            status = FieldStatus.FUNCTIONAL
        elif field.allowed_values:
            status = FieldStatus.FUNCTIONAL
        else:
            status = FieldStatus.NEEDS_INVESTIGATION

        return FieldDefinition(
            reference_name=field.reference_name,
            name=field.name or field.reference_name,
            type=field_type,
            required=field.always_required,
            read_only=field.read_only,
            help_text=field.help_text or '',
            description=field.description or '',
            is_picklist=picklist,
            picklist_id=field.picklist_id,
            status=status,
            allowed_values=list(dict.fromkeys(field.allowed_values)) if picklist else [],
        )

    def list_fields(
        self, project: str, work_item_type: Optional[str] = None
    ) -> List[FieldDefinition]:
        """Fields of a work item type, or the project catalogue when no type is given.

        Raises:
            AzureDevOpsGatewayError: if the listing cannot be retrieved
        """
        if work_item_type:
            payload = self.gateway.get_work_item_type_fields(project, work_item_type)
        else:
            payload = self.gateway.get_fields(project)

        definitions = [self.to_definition(f) for f in payload]
        pending = sum(1 for d in definitions if d.status is FieldStatus.NEEDS_INVESTIGATION)
        scope = f'{project}/{work_item_type}' if work_item_type else project
        logger.info(
            f'Analyzed {len(definitions)} fields for {scope}, '
            f'{pending} picklists need investigation'
        )
        return definitions

    def list_custom_fields(self, project: str) -> List[FieldDefinition]:
        return [d for d in self.list_fields(project) if d.is_custom]

    def sample_field_values(
        self,
        project: str,
        field: str,
        work_item_type: Optional[str] = None,
        limit: int = SAMPLE_LIMIT,
    ) -> List[str]:
        """Distinct values of ``field`` seen on at most ``limit`` recent work items.

        Last resort for picklists whose list endpoints expose nothing. Returns an
        empty list on any gateway error.
        """
        limit = min(limit, SAMPLE_LIMIT)
        query = build_wiql(
            project,
            fields=('System.Id', field),
            work_item_type=work_item_type,
            extra_conditions=[f"[{field}] <> ''"],
        )
        try:
            ids = self.gateway.execute_query(project, query, top=limit)[:limit]
            if not ids:
                return []
            items = self.gateway.get_work_items(ids, fields=[field])
        except AzureDevOpsGatewayError as e:
            logger.warning(f'Could not sample values of {field} in {project}: {str(e)}')
            return []

        values: List[str] = []
        for item in items:
            value = _display_value(item.fields.get(field))
            if value and value not in values:
                values.append(value)
        return values


def _display_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        # Identity fields come back as objects
        return value.get('displayName') or value.get('uniqueName')
    return str(value)
