"""Typed payloads returned by the Azure DevOps REST API.

The gateway validates every structured response into one of these models so that
the discovery components never have to pick values out of raw JSON text.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional


class ADOPayload(BaseModel):
    """Base model for Azure DevOps payloads (camelCase aliases, unknown keys ignored)."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')


class ProjectDTO(ADOPayload):
    id: str = ''
    name: str
    description: Optional[str] = None
    state: Optional[str] = None
    visibility: Optional[str] = None
    url: Optional[str] = None
    last_update_time: Optional[str] = Field(default=None, alias='lastUpdateTime')


class TeamDTO(ADOPayload):
    id: str = ''
    name: str
    description: Optional[str] = None
    url: Optional[str] = None
    project_id: Optional[str] = Field(default=None, alias='projectId')
    project_name: Optional[str] = Field(default=None, alias='projectName')


class WorkItemStateDTO(ADOPayload):
    name: str
    category: Optional[str] = None
    color: Optional[str] = None


class WorkItemTypeFieldRefDTO(ADOPayload):
    name: Optional[str] = None
    reference_name: str = Field(alias='referenceName')
    always_required: bool = Field(default=False, alias='alwaysRequired')
    help_text: Optional[str] = Field(default=None, alias='helpText')


class WorkItemTypeDTO(ADOPayload):
    name: str
    reference_name: Optional[str] = Field(default=None, alias='referenceName')
    description: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[Dict[str, Any]] = None
    is_disabled: bool = Field(default=False, alias='isDisabled')
    states: List[WorkItemStateDTO] = Field(default_factory=list)
    fields: List[WorkItemTypeFieldRefDTO] = Field(default_factory=list)

    @property
    def icon_url(self) -> Optional[str]:
        if self.icon:
            return self.icon.get('url') or self.icon.get('id')
        return None


class FieldDTO(ADOPayload):
    """A field definition, either from the project catalogue or a work item type."""

    name: str = ''
    reference_name: str = Field(alias='referenceName')
    type: Optional[str] = None
    description: Optional[str] = None
    help_text: Optional[str] = Field(default=None, alias='helpText')
    read_only: bool = Field(default=False, alias='readOnly')
    always_required: bool = Field(default=False, alias='alwaysRequired')
    is_picklist: bool = Field(default=False, alias='isPicklist')
    picklist_id: Optional[str] = Field(default=None, alias='picklistId')
    allowed_values: List[str] = Field(default_factory=list, alias='allowedValues')

    @field_validator('allowed_values', mode='before')
    @classmethod
    def _coerce_allowed_values(cls, value: Any) -> List[str]:
        if value is None:
            return []
        return [str(item) for item in value if item is not None]


class PicklistItemDTO(ADOPayload):
    value: str


class PicklistDTO(ADOPayload):
    """Process picklist (``/_apis/work/processes/lists/{id}``)."""

    id: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None
    is_suggested: bool = Field(default=False, alias='isSuggested')
    items: List[str] = Field(default_factory=list)

    @field_validator('items', mode='before')
    @classmethod
    def _coerce_items(cls, value: Any) -> List[str]:
        # Older process APIs return plain strings, newer ones {"value": ...} objects
        if value is None:
            return []
        result = []
        for item in value:
            if isinstance(item, dict):
                if item.get('value') is not None:
                    result.append(str(item['value']))
            elif item is not None:
                result.append(str(item))
        return result


class WorkItemRelationDTO(ADOPayload):
    rel: str
    url: str = ''
    attributes: Dict[str, Any] = Field(default_factory=dict)


class WorkItemDTO(ADOPayload):
    id: int
    rev: Optional[int] = None
    fields: Dict[str, Any] = Field(default_factory=dict)
    relations: List[WorkItemRelationDTO] = Field(default_factory=list)
    url: Optional[str] = None

    @field_validator('relations', mode='before')
    @classmethod
    def _coerce_relations(cls, value: Any) -> Any:
        return value or []

    @property
    def work_item_type(self) -> Optional[str]:
        return self.fields.get('System.WorkItemType')

    @property
    def parent_id(self) -> Optional[int]:
        """Parent work item id from ``System.Parent`` or a hierarchy-reverse relation."""
        parent = self.fields.get('System.Parent')
        if parent not in (None, ''):
            try:
                return int(parent)
            except (TypeError, ValueError):
                return None
        for relation in self.relations:
            if relation.rel == 'System.LinkTypes.Hierarchy-Reverse' and relation.url:
                tail = relation.url.rstrip('/').rsplit('/', 1)[-1]
                if tail.isdigit():
                    return int(tail)
        return None


class WiqlWorkItemRefDTO(ADOPayload):
    id: int
    url: Optional[str] = None


class WiqlResultDTO(ADOPayload):
    query_type: Optional[str] = Field(default=None, alias='queryType')
    as_of: Optional[str] = Field(default=None, alias='asOf')
    work_items: List[WiqlWorkItemRefDTO] = Field(default_factory=list, alias='workItems')

    @property
    def ids(self) -> List[int]:
        return [ref.id for ref in self.work_items]


class IterationAttributesDTO(ADOPayload):
    start_date: Optional[str] = Field(default=None, alias='startDate')
    finish_date: Optional[str] = Field(default=None, alias='finishDate')
    time_frame: Optional[str] = Field(default=None, alias='timeFrame')


class IterationDTO(ADOPayload):
    id: str = ''
    name: str
    path: Optional[str] = None
    attributes: IterationAttributesDTO = Field(default_factory=IterationAttributesDTO)

    @field_validator('attributes', mode='before')
    @classmethod
    def _coerce_attributes(cls, value: Any) -> Any:
        return value or {}


class TeamFieldValueDTO(ADOPayload):
    value: str
    include_children: bool = Field(default=True, alias='includeChildren')


class TeamFieldValuesDTO(ADOPayload):
    default_value: Optional[str] = Field(default=None, alias='defaultValue')
    field: Optional[Dict[str, Any]] = None
    values: List[TeamFieldValueDTO] = Field(default_factory=list)


class ClassificationNodeDTO(ADOPayload):
    id: int = 0
    name: str
    path: Optional[str] = None
    has_children: bool = Field(default=False, alias='hasChildren')
    children: List['ClassificationNodeDTO'] = Field(default_factory=list)


class ValueListDTO(ADOPayload):
    """Generic ``{"count": n, "value": [...]}`` envelope."""

    count: Optional[int] = None
    value: List[Any] = Field(default_factory=list)


ClassificationNodeDTO.model_rebuild()
