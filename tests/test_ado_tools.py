"""Tests for the MCP tool layer."""

import json
import pytest
from datetime import datetime
from unittest.mock import MagicMock, patch

from tl.azure_devops_discovery_mcp_server import config_store
from tl.azure_devops_discovery_mcp_server.ado_tools import AzureDevOpsDiscoveryTools
from tl.azure_devops_discovery_mcp_server.backup import ConfigurationBackup
from tl.azure_devops_discovery_mcp_server.config_store import ConfigurationPersistError
from tl.azure_devops_discovery_mcp_server.gateway import AzureDevOpsGatewayError
from tl.azure_devops_discovery_mcp_server.organization import (
    DiscoveredOrganization,
    FieldDefinition,
    FieldStatus,
)


@pytest.fixture
def mcp():
    return MagicMock()


@pytest.fixture
def tools(mcp, gateway, store):
    backup = ConfigurationBackup(clock=lambda: datetime(2024, 6, 15, 12, 0, 0))
    return AzureDevOpsDiscoveryTools(mcp, gateway=gateway, store=store, backup=backup)


class TestRegistration:
    def test_all_tools_are_registered(self, tools, mcp):
        names = [call.kwargs['name'] for call in mcp.tool.call_args_list]

        assert names == [
            'investigate_configuration',
            'get_work_item_types',
            'resolve_picklist_values',
            'analyze_hierarchy',
            'analyze_team_context',
            'backup_configuration',
            'list_configuration_backups',
            'restore_configuration',
            'get_field_allowed_values',
        ]


class TestInvestigateConfiguration:
    def test_invalid_type_is_an_error(self, tools, gateway):
        response = tools.investigate_configuration(None, 'Contoso', investigation_type='all')

        assert response['status'] == 'error'
        assert 'Unknown investigation kind' in response['message']
        assert response['result']['success'] is False
        assert gateway.calls == []

    def test_custom_fields_investigation(self, tools, gateway, make_field):
        gateway.fields['Contoso'] = [make_field('Custom.Tipo', type='string', picklistId='pl-1')]
        gateway.raw['_apis/work/processes/lists/pl-1'] = json.dumps({'items': ['A', 'B']})

        response = tools.investigate_configuration(
            None, 'Contoso', investigation_type='custom-fields'
        )

        assert response['status'] == 'success'
        assert response['message'] == 'Investigation custom-fields of Contoso completed'
        assert response['result']['resolved_fields'] == 1
        assert 'Resolved fields: 1' in response['report']

    def test_persist_failure_is_reported(self, tools, gateway):
        with patch.object(
            config_store, 'write_yaml_document', side_effect=ConfigurationPersistError('disk full')
        ):
            response = tools.investigate_configuration(
                None, 'Contoso', investigation_type='custom-fields'
            )

        assert response['status'] == 'error'
        assert response['message'].startswith('Failed to persist configuration for Contoso')


class TestWorkItemTypes:
    def test_listing(self, tools, gateway, make_type):
        gateway.work_item_types['Contoso'] = [make_type('Task'), make_type('Bug', disabled=True)]

        response = tools.get_work_item_types(None, 'Contoso')

        assert response['status'] == 'success'
        assert response['count'] == 2
        assert [t['name'] for t in response['work_item_types']] == ['Bug', 'Task']
        assert '• **Bug** (3 states, 0 fields, disabled)' in response['listing']

    def test_gateway_error(self, tools, gateway):
        gateway.work_item_types['Contoso'] = AzureDevOpsGatewayError('HTTP 401')

        response = tools.get_work_item_types(None, 'Contoso')

        assert response['status'] == 'error'
        assert response['count'] == 0


class TestPicklistTools:
    def test_resolve_reports_source(self, tools, gateway):
        gateway.raw['_apis/work/processes/lists/pl-1'] = json.dumps({'items': ['Alta']})

        response = tools.resolve_picklist_values(None, 'Contoso', 'Custom.Nivel', 'pl-1')

        assert response['values'] == ['Alta']
        assert response['source'] == 'organization process list'

    def test_stored_values_come_first(self, tools, gateway, store):
        organization = DiscoveredOrganization(name='contoso')
        organization.custom_fields['Custom.TipoDeHistoria'] = FieldDefinition(
            'Custom.TipoDeHistoria',
            is_picklist=True,
            status=FieldStatus.FUNCTIONAL,
            allowed_values=['Funcional'],
        )
        store.save(organization)

        response = tools.get_field_allowed_values(None, 'Contoso', 'tipoDeHistoria')

        assert response['values'] == ['Funcional']
        assert response['source'] == 'configuration'
        assert response['field'] == 'Custom.TipoDeHistoria'
        assert gateway.calls == []

    def test_unknown_reference_is_resolved_remotely(self, tools, gateway):
        gateway.allowed_values['Custom.Origen'] = ['Interno']

        response = tools.get_field_allowed_values(None, 'Contoso', 'Custom.Origen')

        assert response['values'] == ['Interno']
        assert response['source'] == 'field allowed values'

    def test_work_item_sample_is_the_last_resort(self, tools, gateway, make_work_item):
        gateway.query_ids = [1]
        gateway.work_items[1] = make_work_item(1, 'Bug', Custom__Origen='Externo')

        response = tools.get_field_allowed_values(None, 'Contoso', 'Custom.Origen')

        assert response['values'] == ['Externo']
        assert response['source'] == 'work item sample'

    def test_dynamic_field_uses_stored_picklist_id(self, tools, gateway, store):
        organization = DiscoveredOrganization(name='contoso')
        organization.custom_fields['Custom.Tipo'] = FieldDefinition(
            'Custom.Tipo',
            is_picklist=True,
            picklist_id='pl-1',
            status=FieldStatus.NEEDS_INVESTIGATION,
        )
        store.save(organization)
        gateway.raw['_apis/work/processes/lists/pl-1'] = json.dumps({'items': ['A', 'B']})

        response = tools.get_field_allowed_values(None, 'Contoso', 'tipo')

        assert response['values'] == ['A', 'B']
        assert response['source'] == 'organization process list'
        assert response['field'] == 'Custom.Tipo'
        assert gateway.count('get_field_allowed_values') == 0
        assert gateway.count('execute_query') == 0

    def test_dynamic_field_reports_resolving_strategy(self, tools, gateway, store):
        organization = DiscoveredOrganization(name='contoso')
        organization.custom_fields['Custom.Origen'] = FieldDefinition(
            'Custom.Origen', is_picklist=True, status=FieldStatus.NEEDS_INVESTIGATION
        )
        store.save(organization)
        gateway.allowed_values['Custom.Origen'] = ['Interno']

        response = tools.get_field_allowed_values(None, 'Contoso', 'origen')

        assert response['values'] == ['Interno']
        assert response['source'] == 'field allowed values'

    def test_unresolved_dynamic_field_runs_the_chain_once(self, tools, gateway, store):
        organization = DiscoveredOrganization(name='contoso')
        organization.custom_fields['Custom.Origen'] = FieldDefinition(
            'Custom.Origen', is_picklist=True, status=FieldStatus.NEEDS_INVESTIGATION
        )
        store.save(organization)

        response = tools.get_field_allowed_values(None, 'Contoso', 'origen')

        assert response['values'] == []
        assert response['source'] is None
        assert gateway.count('get_field_allowed_values') == 1
        assert gateway.count('execute_query') == 1


class TestAnalysisTools:
    def test_hierarchy_fails_only_when_every_project_fails(self, tools, gateway):
        gateway.query_ids = AzureDevOpsGatewayError('HTTP 500')

        response = tools.analyze_hierarchy(None, ['Contoso', 'Fabrikam'])

        assert response['status'] == 'error'
        assert sorted(response['analysis']) == ['Contoso', 'Fabrikam']

    def test_hierarchy_without_work_items(self, tools, gateway):
        response = tools.analyze_hierarchy(None, ['Contoso'])

        assert response['status'] == 'success'

    def test_unknown_team_analysis(self, tools, gateway):
        response = tools.analyze_team_context(None, 'Contoso', analysis_type='burndown')

        assert response['status'] == 'error'
        assert 'Valid types' in response['message']
        assert gateway.calls == []

    def test_area_fields_requires_area(self, tools):
        response = tools.analyze_team_context(None, 'Contoso', analysis_type='area-fields')

        assert response['status'] == 'error'

    def test_distribution_report(self, tools, gateway, make_work_item):
        gateway.query_ids = [1]
        gateway.work_items[1] = make_work_item(1, 'Bug', System__State='New')

        response = tools.analyze_team_context(None, 'Contoso', area_path='Contoso\\Web')

        assert response['status'] == 'success'
        assert '- Bug: 1 (100.0%)' in response['report']


class TestBackupTools:
    def test_backup_list_and_restore(self, tools, config_dir):
        mappings = config_dir / 'field-mappings.yml'
        mappings.write_text('fieldMappings: {}\n')

        backup = tools.backup_configuration(None)
        mappings.write_text('fieldMappings: {broken: true}\n')
        listing = tools.list_configuration_backups(None)
        restore = tools.restore_configuration(None, 'field-mappings.yml')

        assert backup['message'] == 'Backed up 1 of 4 configuration files'
        assert listing['backups']['field-mappings.yml'] == [
            'field-mappings.yml.backup_20240615_120000'
        ]
        assert listing['count'] == 1
        assert restore['status'] == 'success'
        assert mappings.read_text() == 'fieldMappings: {}\n'

    def test_restore_unknown_file(self, tools):
        response = tools.restore_configuration(None, 'secrets.yml')

        assert response['status'] == 'error'
        assert response['restored'] == []

    def test_restore_without_backups(self, tools):
        response = tools.restore_configuration(None)

        assert response['status'] == 'error'
        assert response['message'] == 'Restored 0 of 4 configuration files'
