"""Azure DevOps MCP tools for discovering the configuration of an organization.

This module exposes the discovery components (investigations, work item type
enumeration, picklist resolution, hierarchy and team analysis, configuration backups)
as MCP tools.
"""

import logfire
from loguru import logger
from mcp.server.fastmcp.server import Context, FastMCP
from tl.azure_devops_discovery_mcp_server.backup import ConfigurationBackup
from tl.azure_devops_discovery_mcp_server.config_store import (
    ConfigurationPersistError,
    ConfigurationStore,
)
from tl.azure_devops_discovery_mcp_server.field_analyzer import FieldAnalyzer
from tl.azure_devops_discovery_mcp_server.gateway import (
    AzureDevOpsGateway,
    AzureDevOpsGatewayError,
)
from tl.azure_devops_discovery_mcp_server.hierarchy import (
    HierarchyAnalyzer,
    generate_subtask_patterns_documentation,
)
from tl.azure_devops_discovery_mcp_server.investigation import InvestigationOrchestrator
from tl.azure_devops_discovery_mcp_server.models import (
    ADOBackupResponse,
    ADOHierarchyResponse,
    ADOInvestigationResponse,
    ADOListBackupsResponse,
    ADOPicklistValuesResponse,
    ADORestoreResponse,
    ADOTeamContextResponse,
    ADOWorkItemTypesResponse,
)
from tl.azure_devops_discovery_mcp_server.picklist import PicklistResolver
from tl.azure_devops_discovery_mcp_server.team_context import TeamContextAnalyzer
from tl.azure_devops_discovery_mcp_server.work_item_types import (
    WorkItemTypeEnumerator,
    format_work_item_types,
)
from typing import Callable, Dict, List, Optional


TEAM_ANALYSIS_TYPES = (
    'distribution',
    'activity',
    'velocity',
    'area-fields',
    'custom-fields',
    'workflow',
    'hierarchy',
)


class AzureDevOpsDiscoveryTools:
    """Tools for discovering and persisting Azure DevOps process configuration."""

    def __init__(
        self,
        mcp: FastMCP,
        gateway: Optional[AzureDevOpsGateway] = None,
        store: Optional[ConfigurationStore] = None,
        backup: Optional[ConfigurationBackup] = None,
    ) -> None:
        """Initialize Azure DevOps discovery tools.

        Args:
            mcp: The MCP server instance
            gateway: Remote API gateway, built from environment variables when omitted
            store: Configuration store, defaults to ``AZURE_DEVOPS_CONFIG_DIR``
            backup: Backup manager for the configuration files
        """
        self.mcp = mcp
        self.gateway = gateway or AzureDevOpsGateway()
        self.store = store or ConfigurationStore()
        self.backup = backup or ConfigurationBackup()

        self.field_analyzer = FieldAnalyzer(self.gateway)
        self.picklist_resolver = PicklistResolver(self.gateway)
        self.type_enumerator = WorkItemTypeEnumerator(self.gateway)
        self.hierarchy_analyzer = HierarchyAnalyzer(self.gateway)
        self.team_analyzer = TeamContextAnalyzer(self.gateway)
        self.orchestrator = InvestigationOrchestrator(
            self.gateway,
            self.store,
            backup=self.backup,
            field_analyzer=self.field_analyzer,
            picklist_resolver=self.picklist_resolver,
            type_enumerator=self.type_enumerator,
            hierarchy_analyzer=self.hierarchy_analyzer,
            team_analyzer=self.team_analyzer,
        )

        # Register tools with the MCP server
        self.mcp.tool(
            name='investigate_configuration',
            description=(
                'Investigate the configuration of an Azure DevOps project '
                '(workitem-types, custom-fields, picklist-values or full-configuration) '
                'and persist the merged result'
            ),
        )(self.investigate_configuration)
        self.mcp.tool(
            name='get_work_item_types',
            description='List the work item types of an Azure DevOps project',
        )(self.get_work_item_types)
        self.mcp.tool(
            name='resolve_picklist_values',
            description='Resolve the allowed values of a picklist field',
        )(self.resolve_picklist_values)
        self.mcp.tool(
            name='analyze_hierarchy',
            description='Infer parent/child work item type relations from recent work items',
        )(self.analyze_hierarchy)
        self.mcp.tool(
            name='analyze_team_context',
            description='Analyze work items scoped by team, area path or iteration path',
        )(self.analyze_team_context)
        self.mcp.tool(
            name='backup_configuration',
            description='Back up the discovered configuration files',
        )(self.backup_configuration)
        self.mcp.tool(
            name='list_configuration_backups',
            description='List the backups of the discovered configuration files',
        )(self.list_configuration_backups)
        self.mcp.tool(
            name='restore_configuration',
            description='Restore configuration files from their most recent backup',
        )(self.restore_configuration)
        self.mcp.tool(
            name='get_field_allowed_values',
            description='Get the allowed values of a field from the stored configuration',
        )(self.get_field_allowed_values)

    def investigate_configuration(
        self,
        ctx: Context,
        project_name: str,
        investigation_type: str = 'full-configuration',
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
        backup_first: Optional[bool] = False,
        include_document: Optional[bool] = False,
    ) -> ADOInvestigationResponse:
        """Run a configuration investigation and persist the merged documents.

        Args:
            ctx: The FastMCP context
            project_name: Name of the project to investigate
            investigation_type: workitem-types, custom-fields, picklist-values or
                full-configuration
            team: Optional team scope
            area_path: Optional area path scope
            iteration_path: Optional iteration path scope
            backup_first: Whether to back up the configuration files before investigating
            include_document: Whether to return the merged organization document

        Returns:
            ADOInvestigationResponse containing the report and the structured result
        """
        try:
            result = self.orchestrator.investigate(
                investigation_type,
                project_name,
                team=team,
                area_path=area_path,
                iteration_path=iteration_path,
                backup_first=bool(backup_first),
                include_document=bool(include_document),
            )

            if not result.success:
                return ADOInvestigationResponse(
                    status='error',
                    message=result.error or 'Investigation failed',
                    report=result.generate_report(),
                    result=result.to_dict(),
                )

            return ADOInvestigationResponse(
                status='success',
                message=(
                    f'Investigation {investigation_type} of {project_name} {result.status_text}'
                ),
                report=result.generate_report(),
                result=result.to_dict(),
            )

        except ConfigurationPersistError as e:
            error_message = f'Failed to persist configuration for {project_name}: {str(e)}'
            logger.error(error_message)
            logfire.error(
                'Failed to persist investigation result', project=project_name, error=str(e)
            )

            return ADOInvestigationResponse(
                status='error', message=error_message, report='', result={}
            )
        except Exception as e:
            error_message = f'Error investigating configuration of {project_name}: {str(e)}'
            logger.error(error_message)
            logfire.error(
                'Failed to investigate configuration', project=project_name, error=str(e)
            )

            return ADOInvestigationResponse(
                status='error', message=error_message, report='', result={}
            )

    def get_work_item_types(self, ctx: Context, project_name: str) -> ADOWorkItemTypesResponse:
        """List the work item types of a project.

        Args:
            ctx: The FastMCP context
            project_name: Name of the project

        Returns:
            ADOWorkItemTypesResponse containing the formatted listing and the types
        """
        try:
            types = self.gateway.get_work_item_types(project_name)
            result = [
                {
                    'name': t.name,
                    'reference_name': t.reference_name,
                    'description': t.description or '',
                    'is_disabled': t.is_disabled,
                    'states': [s.name for s in t.states],
                    'field_count': len(t.fields),
                }
                for t in sorted(types, key=lambda t: t.name.lower())
            ]

            logger.info(f'Retrieved {len(result)} work item types for project {project_name}')
            logfire.info('Listed work item types', project=project_name, count=len(result))

            return ADOWorkItemTypesResponse(
                status='success',
                message=f'Successfully retrieved work item types of {project_name}',
                listing=format_work_item_types(project_name, types),
                work_item_types=result,
                count=len(result),
            )

        except AzureDevOpsGatewayError as e:
            error_message = f'HTTP error while listing work item types: {str(e)}'
            logger.error(error_message)
            logfire.error('Failed to list work item types', project=project_name, error=str(e))

            return ADOWorkItemTypesResponse(
                status='error', message=error_message, listing='', work_item_types=[], count=0
            )
        except Exception as e:
            error_message = f'Error listing work item types: {str(e)}'
            logger.error(error_message)
            logfire.error('Failed to list work item types', project=project_name, error=str(e))

            return ADOWorkItemTypesResponse(
                status='error', message=error_message, listing='', work_item_types=[], count=0
            )

    def resolve_picklist_values(
        self,
        ctx: Context,
        project_name: str,
        field_reference_name: str,
        picklist_id: Optional[str] = None,
    ) -> ADOPicklistValuesResponse:
        """Resolve the allowed values of a picklist field through every known strategy.

        Args:
            ctx: The FastMCP context
            project_name: Name of the project
            field_reference_name: Reference name of the field, e.g. Custom.TipoDeHistoria
            picklist_id: Optional picklist id, enables the process list endpoints

        Returns:
            ADOPicklistValuesResponse containing the values and the strategy that found them
        """
        try:
            values, source = self.picklist_resolver.resolve_with_source(
                project_name, field_reference_name, picklist_id
            )
            logfire.info(
                'Resolved picklist values',
                project=project_name,
                field=field_reference_name,
                count=len(values),
                source=source,
            )
            message = (
                f'Resolved {len(values)} values for {field_reference_name}'
                if values
                else f'No values could be resolved for {field_reference_name}'
            )
            return ADOPicklistValuesResponse(
                status='success',
                message=message,
                field=field_reference_name,
                values=values,
                source=source,
            )

        except Exception as e:
            error_message = f'Error resolving picklist values of {field_reference_name}: {str(e)}'
            logger.error(error_message)
            logfire.error(
                'Failed to resolve picklist values', field=field_reference_name, error=str(e)
            )

            return ADOPicklistValuesResponse(
                status='error',
                message=error_message,
                field=field_reference_name,
                values=[],
                source=None,
            )

    def analyze_hierarchy(
        self, ctx: Context, project_names: List[str], sample_size: Optional[int] = 50
    ) -> ADOHierarchyResponse:
        """Infer parent/child work item type relations in one or more projects.

        Args:
            ctx: The FastMCP context
            project_names: Projects to analyze
            sample_size: Number of recent work items to inspect per project (max 50)

        Returns:
            ADOHierarchyResponse containing the analysis per project and a report
        """
        try:
            analyses = {
                name: self.hierarchy_analyzer.analyze(name, sample_size or 50)
                for name in project_names
            }
            failed = [name for name, analysis in analyses.items() if analysis.error]

            logfire.info(
                'Analyzed hierarchy', projects=list(project_names), failed=len(failed)
            )

            return ADOHierarchyResponse(
                status='error' if failed and len(failed) == len(analyses) else 'success',
                message=(
                    f'Analyzed hierarchy of {len(analyses) - len(failed)} of '
                    f'{len(analyses)} projects'
                ),
                analysis={name: a.to_dict() for name, a in analyses.items()},
                report=generate_subtask_patterns_documentation(analyses),
            )

        except Exception as e:
            error_message = f'Error analyzing work item hierarchy: {str(e)}'
            logger.error(error_message)
            logfire.error('Failed to analyze hierarchy', error=str(e))

            return ADOHierarchyResponse(
                status='error', message=error_message, analysis={}, report=''
            )

    def _team_analysis(self, analysis_type: str) -> Optional[Callable[..., str]]:
        analyzers: Dict[str, Callable[..., str]] = {
            'distribution': self.team_analyzer.analyze_work_item_distribution,
            'activity': self.team_analyzer.analyze_team_activity,
            'velocity': self.team_analyzer.analyze_team_velocity,
            'custom-fields': self.team_analyzer.analyze_custom_fields_usage,
            'workflow': self.team_analyzer.analyze_workflow_patterns,
            'hierarchy': self.team_analyzer.analyze_hierarchy_patterns,
        }
        return analyzers.get(analysis_type)

    def analyze_team_context(
        self,
        ctx: Context,
        project_name: str,
        analysis_type: str = 'distribution',
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
    ) -> ADOTeamContextResponse:
        """Analyze the work items of a team, area or iteration.

        Args:
            ctx: The FastMCP context
            project_name: Name of the project
            analysis_type: distribution, activity, velocity, area-fields, custom-fields,
                workflow or hierarchy
            team: Optional team scope (required for velocity)
            area_path: Optional area path scope (required for area-fields)
            iteration_path: Optional iteration path scope

        Returns:
            ADOTeamContextResponse containing the text report
        """
        try:
            if analysis_type not in TEAM_ANALYSIS_TYPES:
                return ADOTeamContextResponse(
                    status='error',
                    message=(
                        f'Unknown analysis type: {analysis_type}. '
                        f'Valid types: {", ".join(TEAM_ANALYSIS_TYPES)}'
                    ),
                    analysis_type=analysis_type,
                    report='',
                )

            if analysis_type == 'area-fields':
                if not area_path:
                    return ADOTeamContextResponse(
                        status='error',
                        message='area_path is required for the area-fields analysis',
                        analysis_type=analysis_type,
                        report='',
                    )
                report = self.team_analyzer.analyze_area_specific_fields(
                    project_name, area_path, team=team, iteration_path=iteration_path
                )
            else:
                analyze = self._team_analysis(analysis_type)
                report = analyze(
                    project_name,
                    team=team,
                    area_path=area_path,
                    iteration_path=iteration_path,
                )

            logfire.info(
                'Analyzed team context',
                project=project_name,
                analysis_type=analysis_type,
                team=team,
            )

            return ADOTeamContextResponse(
                status='success',
                message=f'Completed {analysis_type} analysis for {project_name}',
                analysis_type=analysis_type,
                report=report,
            )

        except Exception as e:
            error_message = f'Error running {analysis_type} analysis: {str(e)}'
            logger.error(error_message)
            logfire.error('Failed to analyze team context', project=project_name, error=str(e))

            return ADOTeamContextResponse(
                status='error', message=error_message, analysis_type=analysis_type, report=''
            )

    def backup_configuration(self, ctx: Context) -> ADOBackupResponse:
        """Back up every known configuration file that exists.

        Args:
            ctx: The FastMCP context

        Returns:
            ADOBackupResponse containing one record per configuration file
        """
        try:
            records = self.backup.backup_files(self.store.known_configuration_files())
            created = sum(1 for r in records if r.success)

            return ADOBackupResponse(
                status='success',
                message=f'Backed up {created} of {len(records)} configuration files',
                backups=[r.to_dict() for r in records],
                report=self.backup.generate_backup_report(records),
            )

        except Exception as e:
            error_message = f'Error backing up configuration: {str(e)}'
            logger.error(error_message)
            logfire.error('Failed to back up configuration', error=str(e))

            return ADOBackupResponse(status='error', message=error_message, backups=[], report='')

    def list_configuration_backups(self, ctx: Context) -> ADOListBackupsResponse:
        """List the backups of every known configuration file, most recent first.

        Args:
            ctx: The FastMCP context

        Returns:
            ADOListBackupsResponse containing backup names per configuration file
        """
        try:
            backups = {
                path.name: [b.name for b in self.backup.list_backups(path)]
                for path in self.store.known_configuration_files()
            }
            count = sum(len(names) for names in backups.values())

            return ADOListBackupsResponse(
                status='success',
                message=f'Found {count} configuration backups',
                backups=backups,
                count=count,
            )

        except Exception as e:
            error_message = f'Error listing configuration backups: {str(e)}'
            logger.error(error_message)
            logfire.error('Failed to list configuration backups', error=str(e))

            return ADOListBackupsResponse(
                status='error', message=error_message, backups={}, count=0
            )

    def restore_configuration(
        self, ctx: Context, file_name: Optional[str] = None
    ) -> ADORestoreResponse:
        """Restore configuration files from their most recent backup.

        Args:
            ctx: The FastMCP context
            file_name: Restore only this configuration file (e.g. field-mappings.yml);
                all known files are restored when omitted

        Returns:
            ADORestoreResponse containing one restore result per file
        """
        try:
            paths = self.store.known_configuration_files()
            if file_name:
                paths = [p for p in paths if p.name == file_name]
                if not paths:
                    return ADORestoreResponse(
                        status='error',
                        message=f'Unknown configuration file: {file_name}',
                        restored=[],
                    )

            results = [self.backup.restore_from_backup(path) for path in paths]
            self.store.invalidate()
            restored = sum(1 for r in results if r.success)

            return ADORestoreResponse(
                status='success' if restored else 'error',
                message=f'Restored {restored} of {len(results)} configuration files',
                restored=[r.to_dict() for r in results],
            )

        except Exception as e:
            error_message = f'Error restoring configuration: {str(e)}'
            logger.error(error_message)
            logfire.error('Failed to restore configuration', error=str(e))

            return ADORestoreResponse(status='error', message=error_message, restored=[])

    def _stored_picklist_id(self, reference_name: str) -> Optional[str]:
        definitions = self.store.load().fields_by_reference().get(reference_name, [])
        return next((d.picklist_id for d in definitions if d.picklist_id), None)

    def get_field_allowed_values(
        self, ctx: Context, project_name: str, field_name: str
    ) -> ADOPicklistValuesResponse:
        """Allowed values of a field, by logical name or reference name.

        The stored field mappings are consulted first; dynamic mappings and unknown
        fields are resolved against Azure DevOps, sampling recent work items as a last
        resort.

        Args:
            ctx: The FastMCP context
            project_name: Name of the project
            field_name: Logical field name (e.g. tipoDeHistoria) or reference name

        Returns:
            ADOPicklistValuesResponse containing the values and where they came from
        """
        try:
            mapping = self.store.get_field_mapping(field_name)
            reference_name = mapping.get('azureFieldName', field_name)
            picklist_id = self._stored_picklist_id(reference_name)
            dynamic_sources: List[Optional[str]] = []

            def resolve_dynamic(ref: str) -> List[str]:
                resolved, strategy = self.picklist_resolver.resolve_with_source(
                    project_name, ref, picklist_id
                )
                dynamic_sources.append(strategy)
                return resolved

            values = self.store.get_allowed_values(field_name, value_resolver=resolve_dynamic)
            if dynamic_sources:
                source = dynamic_sources[-1] if values else None
            else:
                source = 'configuration' if values else None

            if not values and '.' in reference_name:
                if not dynamic_sources:
                    values, source = self.picklist_resolver.resolve_with_source(
                        project_name, reference_name, picklist_id
                    )
                if not values:
                    values = self.field_analyzer.sample_field_values(project_name, reference_name)
                    source = 'work item sample' if values else None

            return ADOPicklistValuesResponse(
                status='success',
                message=f'Found {len(values)} allowed values for {field_name}',
                field=reference_name,
                values=values,
                source=source,
            )

        except Exception as e:
            error_message = f'Error getting allowed values of {field_name}: {str(e)}'
            logger.error(error_message)
            logfire.error('Failed to get field allowed values', field=field_name, error=str(e))

            return ADOPicklistValuesResponse(
                status='error', message=error_message, field=field_name, values=[], source=None
            )
