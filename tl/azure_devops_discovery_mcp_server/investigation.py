"""Investigation orchestrator.

An investigation runs ``[backup] -> generate(kind) -> merge -> persist -> report``
against the configuration store. Component failures during generation are recorded
as warnings and the remaining steps still run; only a failure to persist the merged
document is raised to the caller.
"""

import logfire
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from loguru import logger
from pathlib import Path
from tl.azure_devops_discovery_mcp_server.backup import BackupRecord, ConfigurationBackup
from tl.azure_devops_discovery_mcp_server.config_store import ConfigurationStore
from tl.azure_devops_discovery_mcp_server.field_analyzer import FieldAnalyzer
from tl.azure_devops_discovery_mcp_server.gateway import (
    AzureDevOpsGateway,
    AzureDevOpsGatewayError,
)
from tl.azure_devops_discovery_mcp_server.hierarchy import HierarchyAnalyzer
from tl.azure_devops_discovery_mcp_server.organization import (
    AreaNode,
    DiscoveredOrganization,
    Project,
    Team,
    WorkItemState,
)
from tl.azure_devops_discovery_mcp_server.picklist import PicklistResolver
from tl.azure_devops_discovery_mcp_server.team_context import TeamContextAnalyzer
from tl.azure_devops_discovery_mcp_server.work_item_types import WorkItemTypeEnumerator
from typing import Any, Callable, Dict, List, Optional, Set, Union


class InvalidInvestigationRequest(ValueError):
    """Unknown investigation kind or missing project."""


class InvestigationKind(str, Enum):
    WORK_ITEM_TYPES = 'workitem-types'
    CUSTOM_FIELDS = 'custom-fields'
    PICKLIST_VALUES = 'picklist-values'
    FULL_CONFIGURATION = 'full-configuration'

    @classmethod
    def parse(cls, value: Union[str, 'InvestigationKind']) -> 'InvestigationKind':
        if isinstance(value, InvestigationKind):
            return value
        for kind in cls:
            if kind.value == value:
                return kind
        valid = ', '.join(k.value for k in cls)
        raise InvalidInvestigationRequest(
            f'Unknown investigation kind: {value!r}. Valid kinds: {valid}'
        )


@dataclass
class ConfigurationGenerationResult:
    """Outcome of one investigation call. Not persisted."""

    kind: Optional[InvestigationKind]
    project: Optional[str]
    success: bool = True
    team: Optional[str] = None
    area_path: Optional[str] = None
    iteration_path: Optional[str] = None
    backup_requested: bool = False
    resolved_fields: int = 0
    unresolved_fields: int = 0
    details: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    backups: List[BackupRecord] = field(default_factory=list)
    generated_files: List[Path] = field(default_factory=list)
    error: Optional[str] = None
    document: Optional[Dict[str, Any]] = None

    @property
    def status_text(self) -> str:
        if not self.success:
            return 'failed'
        if self.warnings:
            return 'completed with warnings'
        return 'completed'

    def generate_report(self) -> str:
        title = self.kind.value if self.kind else 'invalid request'
        lines = [f'# Configuration Investigation: {title}', '']
        lines.append(f'Project: {self.project or "(none)"}')
        if self.team:
            lines.append(f'Team: {self.team}')
        if self.area_path:
            lines.append(f'Area: {self.area_path}')
        if self.iteration_path:
            lines.append(f'Iteration: {self.iteration_path}')
        lines.append(f'Backup: {"yes" if self.backup_requested else "no"}')
        lines.append(f'Status: {self.status_text}')

        if self.error:
            lines += ['', f'Error: {self.error}']

        if self.backups:
            created = sum(1 for b in self.backups if b.success)
            lines += ['', '## Backups', f'{created} files backed up']
            for record in self.backups:
                if record.success:
                    lines.append(f'- {record.original_path} -> {record.backup_path.name}')
                else:
                    lines.append(f'- {record.original_path}: {record.message}')

        if self.details:
            lines += ['', '## Details'] + self.details

        if self.success:
            lines += [
                '',
                '## Summary',
                f'Resolved fields: {self.resolved_fields}',
                f'Unresolved fields: {self.unresolved_fields}',
            ]
            if self.generated_files:
                lines.append('Generated files:')
                lines += [f'- {path}' for path in self.generated_files]

        if self.warnings:
            lines += ['', '## Warnings'] + [f'- {w}' for w in self.warnings]

        return '\n'.join(lines)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'kind': self.kind.value if self.kind else None,
            'project': self.project,
            'success': self.success,
            'status': self.status_text,
            'resolved_fields': self.resolved_fields,
            'unresolved_fields': self.unresolved_fields,
            'warnings': list(self.warnings),
            'backups': [b.to_dict() for b in self.backups],
            'generated_files': [str(p) for p in self.generated_files],
            'error': self.error,
        }
        if self.document is not None:
            data['document'] = self.document
        return data


@dataclass
class _Run:
    """Mutable state of a single investigation call."""

    organization: DiscoveredOrganization
    result: ConfigurationGenerationResult
    attempted: Set[str] = field(default_factory=set)
    resolved: Set[str] = field(default_factory=set)


class InvestigationOrchestrator:
    """Runs named investigations and merges their results into the store."""

    def __init__(
        self,
        gateway: AzureDevOpsGateway,
        store: ConfigurationStore,
        backup: Optional[ConfigurationBackup] = None,
        field_analyzer: Optional[FieldAnalyzer] = None,
        picklist_resolver: Optional[PicklistResolver] = None,
        type_enumerator: Optional[WorkItemTypeEnumerator] = None,
        hierarchy_analyzer: Optional[HierarchyAnalyzer] = None,
        team_analyzer: Optional[TeamContextAnalyzer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.backup = backup or ConfigurationBackup()
        self.field_analyzer = field_analyzer or FieldAnalyzer(gateway)
        self.picklist_resolver = picklist_resolver or PicklistResolver(gateway)
        self.type_enumerator = type_enumerator or WorkItemTypeEnumerator(gateway)
        self.hierarchy_analyzer = hierarchy_analyzer or HierarchyAnalyzer(gateway)
        self.team_analyzer = team_analyzer or TeamContextAnalyzer(gateway)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def investigate(
        self,
        kind: Union[str, InvestigationKind],
        project: str,
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
        backup_first: bool = False,
        include_document: bool = False,
    ) -> ConfigurationGenerationResult:
        """Run an investigation and persist the merged configuration.

        Args:
            kind: One of ``workitem-types``, ``custom-fields``, ``picklist-values`` or
                ``full-configuration``
            project: Project to investigate
            team: Optional team scope, reported and used by team analysis
            area_path: Optional area path scope
            iteration_path: Optional iteration path scope
            backup_first: Back up the known configuration files before anything else
            include_document: Attach the merged organization document to the result

        Returns:
            The generation result. Invalid requests yield a failed result and touch
            nothing.

        Raises:
            ConfigurationPersistError: if the merged documents cannot be written
        """
        try:
            parsed_kind = InvestigationKind.parse(kind)
            if not project or not str(project).strip():
                raise InvalidInvestigationRequest('A project name is required')
        except InvalidInvestigationRequest as e:
            logger.error(f'Rejected investigation request: {str(e)}')
            logfire.error('Invalid investigation request', kind=str(kind), error=str(e))
            return ConfigurationGenerationResult(
                kind=kind if isinstance(kind, InvestigationKind) else None,
                project=project or None,
                success=False,
                error=str(e),
            )

        project = project.strip()
        result = ConfigurationGenerationResult(
            kind=parsed_kind,
            project=project,
            team=team,
            area_path=area_path,
            iteration_path=iteration_path,
            backup_requested=backup_first,
        )
        logger.info(f'Starting {parsed_kind.value} investigation for project {project}')
        logfire.info(
            'Investigation started', kind=parsed_kind.value, project=project, backup=backup_first
        )

        with self.store.transaction() as organization:
            if backup_first:
                result.backups = self.backup.backup_files(self.store.known_configuration_files())

            run = _Run(organization=organization, result=result)
            self._ensure_identity(organization)

            if parsed_kind is InvestigationKind.WORK_ITEM_TYPES:
                self._step(run, 'work item types', lambda: self._work_item_types(run, project))
            elif parsed_kind is InvestigationKind.CUSTOM_FIELDS:
                self._step(run, 'custom fields', lambda: self._custom_fields(run, project))
            elif parsed_kind is InvestigationKind.PICKLIST_VALUES:
                self._step(run, 'picklist values', lambda: self._picklist_values(run, project))
            else:
                self._full_configuration(run, project)

            self._finish(run, parsed_kind, project)

        result.generated_files = list(self.store.document_paths().values())
        if include_document:
            result.document = self.store.load().to_dict()

        logger.info(
            f'{parsed_kind.value} investigation for {project} {result.status_text}: '
            f'{result.resolved_fields} resolved, {result.unresolved_fields} unresolved'
        )
        logfire.info(
            'Investigation finished',
            kind=parsed_kind.value,
            project=project,
            resolved=result.resolved_fields,
            unresolved=result.unresolved_fields,
            warnings=len(result.warnings),
        )
        return result

    # ------------------------------------------------------------------
    # Step plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _step(run: _Run, name: str, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as e:
            message = f'{name} step failed: {str(e)}'
            logger.error(message)
            logfire.error('Investigation step failed', step=name, error=str(e))
            run.result.warnings.append(message)

    def _ensure_identity(self, organization: DiscoveredOrganization) -> None:
        url = getattr(self.gateway, 'organization_url', '') or ''
        if url and not organization.url:
            organization.url = url
        if not organization.name and organization.url:
            organization.name = organization.url.rstrip('/').rsplit('/', 1)[-1]

    def _finish(self, run: _Run, kind: InvestigationKind, project: str) -> None:
        organization = run.organization
        grouped = organization.fields_by_reference()
        unresolved = [
            ref
            for ref in run.attempted
            if not any(d.is_functional for d in grouped.get(ref, []))
        ]
        run.result.resolved_fields = len(run.resolved)
        run.result.unresolved_fields = len(unresolved)

        now = self.clock().isoformat()
        organization.metadata['discoveryDate'] = now
        organization.metadata['lastInvestigation'] = {
            'kind': kind.value,
            'project': project,
            'date': now,
            'resolvedFields': run.result.resolved_fields,
            'unresolvedFields': run.result.unresolved_fields,
        }
        organization.metadata['statistics'] = organization.compute_statistics()

    # ------------------------------------------------------------------
    # Generation steps
    # ------------------------------------------------------------------

    def _work_item_types(self, run: _Run, project: str) -> None:
        names = self.type_enumerator.list_enabled_types(project)
        if not names:
            # An empty answer means "could not determine"; keep the stored list
            run.result.warnings.append(f'Could not determine the work item types of {project}')
            return
        run.organization.replace_work_item_types(sorted(names))
        run.result.details.append(f'Work item types ({len(names)}): {", ".join(sorted(names))}')

    def _custom_fields(self, run: _Run, project: str) -> None:
        fields = self.field_analyzer.list_custom_fields(project)
        transitioned = run.organization.merge_custom_fields(fields)
        run.resolved.update(transitioned)
        run.result.details.append(f'Custom fields discovered: {len(fields)}')
        self._resolve_pending(run, project, set(f.reference_name for f in fields))

    def _picklist_values(self, run: _Run, project: str) -> None:
        organization = run.organization
        if not any(True for _ in organization.iter_fields()):
            logger.info(f'No fields stored yet, discovering custom fields of {project} first')
            fields = self.field_analyzer.list_custom_fields(project)
            run.resolved.update(organization.merge_custom_fields(fields))
            run.result.details.append(f'Custom fields discovered: {len(fields)}')
        self._resolve_pending(run, project)

    def _resolve_pending(
        self, run: _Run, project: str, references: Optional[Set[str]] = None
    ) -> None:
        """Resolve every non-FUNCTIONAL picklist field, once per reference name per run."""
        grouped = run.organization.fields_by_reference()
        for reference_name in sorted(grouped):
            if references is not None and reference_name not in references:
                continue
            if reference_name in run.attempted:
                continue
            definitions = grouped[reference_name]
            pending = [d for d in definitions if d.is_picklist and not d.is_functional]
            if not pending:
                continue

            run.attempted.add(reference_name)
            known = next((d for d in definitions if d.is_functional and d.allowed_values), None)
            if known is not None:
                # Another work item type already carries the values of this field
                values, source = list(known.allowed_values), 'stored definition'
            else:
                picklist_id = next((d.picklist_id for d in definitions if d.picklist_id), None)
                values, source = self.picklist_resolver.resolve_with_source(
                    project, reference_name, picklist_id
                )
            if not values:
                run.result.details.append(f'- {reference_name}: no values found')
                continue

            if any([d.mark_resolved(values) for d in pending]):
                run.resolved.add(reference_name)
            run.result.details.append(
                f'- {reference_name}: {len(values)} values via {source}'
            )

    def _refresh_projects(self, run: _Run, project: str) -> None:
        organization = run.organization
        existing = {p.name.lower(): p for p in organization.projects}
        projects = []
        for dto in sorted(self.gateway.list_projects(), key=lambda p: p.name.lower()):
            current = existing.get(dto.name.lower())
            projects.append(
                Project(
                    id=dto.id,
                    name=dto.name,
                    description=dto.description or '',
                    state=dto.state,
                    visibility=dto.visibility,
                    teams=current.teams if current else [],
                    area_structure=current.area_structure if current else None,
                )
            )
        if not any(p.name.lower() == project.lower() for p in projects):
            run.result.warnings.append(f'Project {project} was not found in the organization')
        organization.projects = projects
        run.result.details.append(f'Projects: {len(projects)}')

    def _refresh_teams(self, run: _Run, project: str) -> None:
        target = run.organization.project(project)
        if target is None:
            return
        teams = []
        for dto in sorted(self.gateway.list_teams(project), key=lambda t: t.name.lower()):
            teams.append(
                Team(
                    id=dto.id,
                    name=dto.name,
                    project_id=dto.project_id or target.id,
                    description=dto.description or '',
                    analysis=self.team_analyzer.analyze_team(dto.name, dto.description or ''),
                )
            )
        target.teams = teams
        run.result.details.append(f'Teams in {project}: {len(teams)}')

    def _refresh_area_structure(self, run: _Run, project: str) -> None:
        target = run.organization.project(project)
        if target is None:
            return
        target.area_structure = _area_node(self.gateway.get_area_tree(project))

    def _refresh_type_details(self, run: _Run, project: str) -> None:
        """States, colors and per-type fields of every stored work item type."""
        organization = run.organization
        payload = {t.name: t for t in self.gateway.get_work_item_types(project)}
        for name, work_item_type in organization.work_item_types.items():
            dto = payload.get(name)
            if dto is not None:
                work_item_type.reference_name = dto.reference_name
                work_item_type.description = dto.description or ''
                work_item_type.color = dto.color
                work_item_type.icon = dto.icon_url
                work_item_type.is_disabled = dto.is_disabled
                work_item_type.states = [
                    WorkItemState(name=s.name, category=s.category, color=s.color)
                    for s in dto.states
                ]
            try:
                fields = self.field_analyzer.list_fields(project, name)
            except AzureDevOpsGatewayError as e:
                run.result.warnings.append(f'fields of {name} could not be listed: {str(e)}')
                continue
            run.resolved.update(work_item_type.merge_fields(fields))

    def _record_hierarchy(self, run: _Run, project: str) -> None:
        analysis = self.hierarchy_analyzer.analyze(project)
        if analysis.error:
            run.result.warnings.append(f'hierarchy analysis: {analysis.error}')
        hierarchy = run.organization.metadata.setdefault('hierarchy', {})
        hierarchy[project] = analysis.to_dict()
        if analysis.has_relations:
            relations = '; '.join(
                f'{parent} -> {", ".join(children)}'
                for parent, children in analysis.parent_child_relations.items()
            )
            run.result.details.append(f'Hierarchy: {relations}')
        else:
            run.result.details.append(f'Hierarchy: {analysis.message or "no data"}')

    def _full_configuration(self, run: _Run, project: str) -> None:
        steps = [
            ('projects', lambda: self._refresh_projects(run, project)),
            ('teams', lambda: self._refresh_teams(run, project)),
            ('area structure', lambda: self._refresh_area_structure(run, project)),
            ('work item types', lambda: self._work_item_types(run, project)),
            ('work item type details', lambda: self._refresh_type_details(run, project)),
            ('custom fields', lambda: self._custom_fields(run, project)),
            ('picklist values', lambda: self._resolve_pending(run, project)),
            ('hierarchy', lambda: self._record_hierarchy(run, project)),
        ]
        for name, action in steps:
            self._step(run, name, action)


def _area_node(dto: Any) -> AreaNode:
    return AreaNode(
        name=dto.name,
        id=dto.id,
        path=dto.path,
        has_children=dto.has_children,
        children=[_area_node(child) for child in dto.children],
    )
