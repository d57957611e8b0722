"""Domain model of a discovered Azure DevOps organization.

The ``DiscoveredOrganization`` document is owned by the configuration store. It is
loaded, mutated in place during one investigation and written back as YAML.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional


DYNAMIC_FROM_SOURCE = '@DYNAMIC_FROM_SOURCE'
# Marker written by earlier generator versions, still honoured on read
LEGACY_DYNAMIC_MARKERS = ('@DYNAMIC_FROM_AZURE_DEVOPS',)

SYSTEM_FIELD_PREFIXES = ('System.', 'Microsoft.')

DEFAULT_FIELD_MAPPINGS: Dict[str, Dict[str, Any]] = {
    'title': {'azureFieldName': 'System.Title', 'type': 'string', 'required': True},
    'description': {'azureFieldName': 'System.Description', 'type': 'html', 'required': False},
    'assignedTo': {'azureFieldName': 'System.AssignedTo', 'type': 'identity', 'required': False},
    'state': {
        'azureFieldName': 'System.State',
        'type': 'string',
        'required': True,
        'defaultValue': 'New',
    },
    'priority': {
        'azureFieldName': 'Microsoft.VSTS.Common.Priority',
        'type': 'integer',
        'required': False,
        'defaultValue': 2,
    },
    'tags': {'azureFieldName': 'System.Tags', 'type': 'plainText', 'required': False},
}


class FieldStatus(str, Enum):
    """Confidence marker on a field's cached value list."""

    UNKNOWN = 'unknown values'
    NEEDS_INVESTIGATION = 'needs investigation'
    FUNCTIONAL = 'functional'

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> 'FieldStatus':
        if isinstance(value, FieldStatus):
            return value
        text = str(value or '').strip().lower().replace('_', ' ')
        for status in cls:
            if status.value == text or status.name.lower().replace('_', ' ') == text:
                return status
        return cls.UNKNOWN


_STATUS_RANK = {
    FieldStatus.UNKNOWN: 0,
    FieldStatus.NEEDS_INVESTIGATION: 1,
    FieldStatus.FUNCTIONAL: 2,
}


def _dedupe(values: List[Any]) -> List[str]:
    seen = set()
    result = []
    for value in values:
        text = str(value)
        if text not in seen:
            seen.add(text)
            result.append(text)
    return result


@dataclass
class FieldDefinition:
    """A field of a work item type or of the project catalogue."""

    reference_name: str
    name: str = ''
    type: str = 'string'
    required: bool = False
    read_only: bool = False
    help_text: str = ''
    description: str = ''
    is_picklist: bool = False
    picklist_id: Optional[str] = None
    status: FieldStatus = FieldStatus.UNKNOWN
    allowed_values: List[str] = field(default_factory=list)

    @property
    def is_custom(self) -> bool:
        return not self.reference_name.startswith(SYSTEM_FIELD_PREFIXES)

    @property
    def is_functional(self) -> bool:
        return self.status is FieldStatus.FUNCTIONAL

    def improve_status(self, status: FieldStatus) -> bool:
        """Move to ``status`` only if it ranks higher. Returns True on change."""
        if status.rank > self.status.rank:
            self.status = status
            return True
        return False

    def mark_resolved(self, values: List[str]) -> bool:
        """Record a successful resolution.

        Returns True if the field transitioned to FUNCTIONAL in this call.
        """
        transitioned = not self.is_functional
        self.allowed_values = _dedupe(values)
        self.status = FieldStatus.FUNCTIONAL
        return transitioned

    def merge_from(self, fresh: 'FieldDefinition') -> bool:
        """Take metadata from a freshly discovered copy without regressing status.

        Returns True if the merge moved this field to FUNCTIONAL.
        """
        was_functional = self.is_functional
        self.name = fresh.name or self.name
        self.type = fresh.type or self.type
        self.required = fresh.required
        self.read_only = fresh.read_only
        self.help_text = fresh.help_text or self.help_text
        self.description = fresh.description or self.description
        self.is_picklist = fresh.is_picklist or self.is_picklist
        self.picklist_id = fresh.picklist_id or self.picklist_id
        if fresh.is_functional and (fresh.allowed_values or not self.allowed_values):
            self.allowed_values = list(fresh.allowed_values)
        self.improve_status(fresh.status)
        return self.is_functional and not was_functional

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'name': self.name,
            'referenceName': self.reference_name,
            'type': self.type,
            'required': self.required,
            'readOnly': self.read_only,
            'isPicklist': self.is_picklist,
            'status': self.status.value,
            'allowedValues': list(self.allowed_values),
        }
        if self.picklist_id:
            data['picklistId'] = self.picklist_id
        if self.help_text:
            data['helpText'] = self.help_text
        if self.description:
            data['description'] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FieldDefinition':
        allowed = data.get('allowedValues') or []
        if not isinstance(allowed, list):
            allowed = []
        return cls(
            reference_name=str(data.get('referenceName', '')),
            name=str(data.get('name') or ''),
            type=str(data.get('type') or 'string'),
            required=bool(data.get('required', False)),
            read_only=bool(data.get('readOnly', False)),
            help_text=str(data.get('helpText') or ''),
            description=str(data.get('description') or ''),
            is_picklist=bool(data.get('isPicklist', False)),
            picklist_id=data.get('picklistId'),
            status=FieldStatus.parse(data.get('status')),
            allowed_values=[str(v) for v in allowed],
        )


@dataclass
class WorkItemState:
    name: str
    category: Optional[str] = None
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'category': self.category, 'color': self.color}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkItemState':
        return cls(
            name=str(data.get('name', '')),
            category=data.get('category'),
            color=data.get('color'),
        )


@dataclass
class WorkItemType:
    """A work item type with its ordered fields and states."""

    name: str
    reference_name: Optional[str] = None
    description: str = ''
    color: Optional[str] = None
    icon: Optional[str] = None
    is_disabled: bool = False
    fields: List[FieldDefinition] = field(default_factory=list)
    states: List[WorkItemState] = field(default_factory=list)

    def get_field(self, reference_name: str) -> Optional[FieldDefinition]:
        for definition in self.fields:
            if definition.reference_name == reference_name:
                return definition
        return None

    def merge_fields(self, fresh_fields: List[FieldDefinition]) -> List[str]:
        """Replace the field list with ``fresh_fields``, keeping resolved statuses.

        Returns the reference names of stored fields that became FUNCTIONAL.
        """
        merged = []
        transitioned = []
        for fresh in fresh_fields:
            existing = self.get_field(fresh.reference_name)
            if existing is not None:
                if existing.merge_from(fresh):
                    transitioned.append(fresh.reference_name)
                merged.append(existing)
            else:
                merged.append(fresh)
        self.fields = merged
        return transitioned

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'referenceName': self.reference_name,
            'description': self.description,
            'color': self.color,
            'icon': self.icon,
            'isDisabled': self.is_disabled,
            'fields': [f.to_dict() for f in self.fields],
            'states': [s.to_dict() for s in self.states],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkItemType':
        return cls(
            name=str(data.get('name', '')),
            reference_name=data.get('referenceName'),
            description=str(data.get('description') or ''),
            color=data.get('color'),
            icon=data.get('icon'),
            is_disabled=bool(data.get('isDisabled', False)),
            fields=[FieldDefinition.from_dict(f) for f in data.get('fields') or []],
            states=[WorkItemState.from_dict(s) for s in data.get('states') or []],
        )


@dataclass
class TeamAnalysis:
    detected_prefix: Optional[str] = None
    category: str = 'other'
    description: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'detectedPrefix': self.detected_prefix,
            'category': self.category,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TeamAnalysis':
        return cls(
            detected_prefix=data.get('detectedPrefix'),
            category=str(data.get('category') or 'other'),
            description=str(data.get('description') or ''),
        )


@dataclass
class Team:
    """A team. ``project_id`` is a back-reference; the project owns the team."""

    id: str
    name: str
    project_id: Optional[str] = None
    description: str = ''
    analysis: Optional[TeamAnalysis] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'name': self.name,
            'projectId': self.project_id,
            'description': self.description,
        }
        if self.analysis is not None:
            data['analysis'] = self.analysis.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Team':
        analysis = data.get('analysis')
        return cls(
            id=str(data.get('id', '')),
            name=str(data.get('name', '')),
            project_id=data.get('projectId'),
            description=str(data.get('description') or ''),
            analysis=TeamAnalysis.from_dict(analysis) if isinstance(analysis, dict) else None,
        )


@dataclass
class AreaNode:
    name: str
    id: int = 0
    path: Optional[str] = None
    has_children: bool = False
    children: List['AreaNode'] = field(default_factory=list)

    def paths(self) -> Iterator[str]:
        if self.path:
            yield self.path
        for child in self.children:
            yield from child.paths()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'path': self.path,
            'hasChildren': self.has_children,
            'children': [c.to_dict() for c in self.children],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AreaNode':
        return cls(
            name=str(data.get('name', '')),
            id=int(data.get('id') or 0),
            path=data.get('path'),
            has_children=bool(data.get('hasChildren', False)),
            children=[cls.from_dict(c) for c in data.get('children') or []],
        )


@dataclass
class Project:
    id: str
    name: str
    description: str = ''
    state: Optional[str] = None
    visibility: Optional[str] = None
    teams: List[Team] = field(default_factory=list)
    area_structure: Optional[AreaNode] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'state': self.state,
            'visibility': self.visibility,
            'teams': [t.to_dict() for t in self.teams],
        }
        if self.area_structure is not None:
            data['areaStructure'] = self.area_structure.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Project':
        area = data.get('areaStructure')
        return cls(
            id=str(data.get('id', '')),
            name=str(data.get('name', '')),
            description=str(data.get('description') or ''),
            state=data.get('state'),
            visibility=data.get('visibility'),
            teams=[Team.from_dict(t) for t in data.get('teams') or []],
            area_structure=AreaNode.from_dict(area) if isinstance(area, dict) else None,
        )


def logical_field_name(reference_name: str) -> str:
    """``Custom.TipoDeHistoria`` -> ``tipoDeHistoria``."""
    tail = reference_name.rsplit('.', 1)[-1]
    tail = re.sub(r'[^0-9A-Za-z_]', '', tail) or reference_name
    return tail[0].lower() + tail[1:]


@dataclass
class DiscoveredOrganization:
    """Root configuration document produced by discovery."""

    name: str = ''
    url: str = ''
    projects: List[Project] = field(default_factory=list)
    work_item_types: Dict[str, WorkItemType] = field(default_factory=dict)
    custom_fields: Dict[str, FieldDefinition] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def project(self, name: str) -> Optional[Project]:
        for project in self.projects:
            if project.name.lower() == name.lower():
                return project
        return None

    def iter_fields(self) -> Iterator[FieldDefinition]:
        """All field definitions: custom fields first, then per-type fields."""
        yield from self.custom_fields.values()
        for work_item_type in self.work_item_types.values():
            yield from work_item_type.fields

    def fields_by_reference(self) -> Dict[str, List[FieldDefinition]]:
        grouped: Dict[str, List[FieldDefinition]] = {}
        for definition in self.iter_fields():
            grouped.setdefault(definition.reference_name, []).append(definition)
        return grouped

    def enabled_type_names(self) -> List[str]:
        return sorted(name for name, t in self.work_item_types.items() if not t.is_disabled)

    def replace_work_item_types(self, names: List[str]) -> None:
        """Replace the type list with ``names``, keeping details of surviving types."""
        self.work_item_types = {
            name: self.work_item_types.get(name) or WorkItemType(name=name)
            for name in sorted(names)
        }

    def merge_custom_fields(self, fresh_fields: List[FieldDefinition]) -> List[str]:
        """Add or update custom fields; returns names of stored fields that became FUNCTIONAL."""
        transitioned = []
        for fresh in fresh_fields:
            existing = self.custom_fields.get(fresh.reference_name)
            if existing is None:
                self.custom_fields[fresh.reference_name] = fresh
            elif existing.merge_from(fresh):
                transitioned.append(fresh.reference_name)
        return transitioned

    def compute_statistics(self) -> Dict[str, int]:
        unique = {}
        for definition in self.iter_fields():
            current = unique.get(definition.reference_name)
            if current is None or definition.status.rank > current.rank:
                unique[definition.reference_name] = definition.status
        statuses = list(unique.values())
        return {
            'totalProjects': len(self.projects),
            'totalTeams': sum(len(p.teams) for p in self.projects),
            'totalWorkItemTypes': len(self.work_item_types),
            'totalCustomFields': len(self.custom_fields),
            'functionalFields': statuses.count(FieldStatus.FUNCTIONAL),
            'fieldsNeedingInvestigation': statuses.count(FieldStatus.NEEDS_INVESTIGATION),
            'fieldsWithUnknownValues': statuses.count(FieldStatus.UNKNOWN),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'organization': {'name': self.name, 'url': self.url},
            'projects': [p.to_dict() for p in self.projects],
            'workItemTypes': {name: t.to_dict() for name, t in self.work_item_types.items()},
            'customFields': {ref: f.to_dict() for ref, f in self.custom_fields.items()},
            'metadata': dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DiscoveredOrganization':
        data = data or {}
        organization = data.get('organization') or {}
        if not isinstance(organization, dict):
            organization = {'name': str(organization)}
        types = data.get('workItemTypes') or {}
        custom = data.get('customFields') or {}
        return cls(
            name=str(organization.get('name') or ''),
            url=str(organization.get('url') or ''),
            projects=[Project.from_dict(p) for p in data.get('projects') or []],
            work_item_types={
                name: WorkItemType.from_dict({'name': name, **(value or {})})
                for name, value in types.items()
            },
            custom_fields={
                ref: FieldDefinition.from_dict({'referenceName': ref, **(value or {})})
                for ref, value in custom.items()
            },
            metadata=dict(data.get('metadata') or {}),
        )

    def field_mappings_document(self) -> Dict[str, Any]:
        """Field-mapping document keyed by logical field name."""
        mappings: Dict[str, Dict[str, Any]] = {
            name: dict(mapping) for name, mapping in DEFAULT_FIELD_MAPPINGS.items()
        }
        mapped_references = {m['azureFieldName']: name for name, m in mappings.items()}

        best: Dict[str, FieldDefinition] = {}
        for definition in self.iter_fields():
            current = best.get(definition.reference_name)
            if current is None or definition.status.rank > current.status.rank:
                best[definition.reference_name] = definition

        for reference_name in sorted(best):
            definition = best[reference_name]
            logical = mapped_references.get(reference_name)
            if logical is None:
                logical = logical_field_name(reference_name)
                if logical in mappings:
                    logical = reference_name
                mappings[logical] = {}
                mapped_references[reference_name] = logical

            mapping = mappings[logical]
            mapping['azureFieldName'] = reference_name
            mapping['type'] = definition.type
            mapping['required'] = mapping.get('required', False) or definition.required
            mapping['status'] = definition.status.value
            if definition.is_functional and definition.allowed_values:
                mapping['allowedValues'] = list(definition.allowed_values)
            elif definition.is_picklist:
                mapping['allowedValues'] = DYNAMIC_FROM_SOURCE

        return {'fieldMappings': mappings}

    def organization_config_document(self) -> Dict[str, Any]:
        """Enabled work item types and their required fields."""
        required = {
            name: [f.reference_name for f in t.fields if f.required]
            for name, t in self.work_item_types.items()
            if not t.is_disabled
        }
        return {
            'organization': {'name': self.name, 'url': self.url},
            'workItemTypes': {'enabled': self.enabled_type_names()},
            'requiredFields': required,
        }
