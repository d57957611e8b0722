"""Tests for the investigation orchestrator."""

import json
import pytest
import yaml
from datetime import datetime
from unittest.mock import patch

from tl.azure_devops_discovery_mcp_server import config_store
from tl.azure_devops_discovery_mcp_server.backup import ConfigurationBackup
from tl.azure_devops_discovery_mcp_server.config_store import (
    ConfigurationPersistError,
    ConfigurationStore,
)
from tl.azure_devops_discovery_mcp_server.dtos import ProjectDTO, TeamDTO
from tl.azure_devops_discovery_mcp_server.gateway import AzureDevOpsGatewayError
from tl.azure_devops_discovery_mcp_server.investigation import (
    InvalidInvestigationRequest,
    InvestigationKind,
    InvestigationOrchestrator,
)
from tl.azure_devops_discovery_mcp_server.organization import (
    DiscoveredOrganization,
    FieldDefinition,
    FieldStatus,
    WorkItemType,
)


@pytest.fixture
def orchestrator(gateway, store, fixed_clock):
    backup = ConfigurationBackup(clock=lambda: datetime(2024, 6, 15, 12, 0, 0))
    return InvestigationOrchestrator(gateway, store, backup=backup, clock=fixed_clock)


@pytest.fixture
def populated_gateway(gateway, make_type, make_field):
    gateway.projects = [ProjectDTO(id='p1', name='Contoso'), ProjectDTO(id='p2', name='Fabrikam')]
    gateway.teams['Contoso'] = [TeamDTO(id='t1', name='ABC - Payments', description='backend')]
    gateway.work_item_types['Contoso'] = [
        make_type('Bug', fields=('System.Title', 'Custom.Severidad')),
        make_type('Historia técnica'),
        make_type('Issue', disabled=True),
    ]
    gateway.type_fields['Bug'] = [
        make_field('System.Title', type='string', alwaysRequired=True),
        make_field('Custom.Severidad', type='string', picklistId='pl-9'),
    ]
    gateway.fields['Contoso'] = [
        make_field('System.Title', type='string'),
        make_field('Custom.TipoDeHistoria', type='string', picklistId='pl-1'),
        make_field('Custom.Notas', type='html'),
    ]
    gateway.raw['_apis/work/processes/lists/pl-1'] = json.dumps(
        {'items': ['Funcional', 'Técnica']}
    )
    gateway.allowed_values['Custom.Severidad'] = ['Alta', 'Baja']
    return gateway


def save_organization(store, *custom_fields, **types):
    organization = DiscoveredOrganization(name='contoso')
    for definition in custom_fields:
        organization.custom_fields[definition.reference_name] = definition
    for name, fields in types.items():
        organization.work_item_types[name] = WorkItemType(name=name, fields=list(fields))
    store.save(organization)


class TestInvestigationKind:
    def test_exact_strings(self):
        assert InvestigationKind.parse('workitem-types') is InvestigationKind.WORK_ITEM_TYPES
        assert InvestigationKind.parse('full-configuration') is (
            InvestigationKind.FULL_CONFIGURATION
        )

    def test_unknown_kind(self):
        with pytest.raises(InvalidInvestigationRequest):
            InvestigationKind.parse('Full-Configuration')


class TestInvalidRequests:
    def test_unknown_kind_has_no_side_effects(self, orchestrator, gateway, config_dir):
        result = orchestrator.investigate('everything', 'Contoso', backup_first=True)

        assert not result.success
        assert 'Unknown investigation kind' in result.error
        assert gateway.calls == []
        assert list(config_dir.iterdir()) == []

    def test_missing_project(self, orchestrator, gateway, config_dir):
        result = orchestrator.investigate('custom-fields', '  ')

        assert not result.success
        assert result.status_text == 'failed'
        assert gateway.calls == []
        assert list(config_dir.iterdir()) == []


class TestFullConfiguration:
    def test_backup_first_backs_up_existing_files_only(
        self, orchestrator, populated_gateway, config_dir
    ):
        (config_dir / 'discovered-organization.yml').write_text('organization: {name: old}\n')
        (config_dir / 'business-rules.yml').write_text('rules: []\n')

        result = orchestrator.investigate('full-configuration', 'Contoso', backup_first=True)

        backups = sorted(p.name for p in config_dir.iterdir() if '.backup_' in p.name)
        assert backups == [
            'business-rules.yml.backup_20240615_120000',
            'discovered-organization.yml.backup_20240615_120000',
        ]
        assert sum(1 for r in result.backups if r.success) == 2
        assert (config_dir / 'business-rules.yml').read_text() == 'rules: []\n'

    def test_resolved_count_matches_transitions(self, orchestrator, populated_gateway, store):
        result = orchestrator.investigate('full-configuration', 'Contoso')

        assert result.success
        assert result.resolved_fields == 2
        assert result.unresolved_fields == 0
        assert 'Resolved fields: 2' in result.generate_report()

        organization = store.reload()
        tipo = organization.custom_fields['Custom.TipoDeHistoria']
        assert tipo.status is FieldStatus.FUNCTIONAL
        assert tipo.allowed_values == ['Funcional', 'Técnica']
        severidad = organization.work_item_types['Bug'].get_field('Custom.Severidad')
        assert severidad.allowed_values == ['Alta', 'Baja']

    def test_merged_document_contents(self, orchestrator, populated_gateway, store):
        orchestrator.investigate('full-configuration', 'Contoso')

        organization = store.reload()
        assert organization.name == 'contoso'
        assert sorted(organization.work_item_types) == ['Bug', 'Historia técnica']
        assert [p.name for p in organization.projects] == ['Contoso', 'Fabrikam']
        team = organization.project('Contoso').teams[0]
        assert team.analysis.detected_prefix == 'ABC'
        assert team.analysis.category == 'development'
        assert organization.metadata['statistics']['functionalFields'] == 4
        assert organization.metadata['lastInvestigation']['kind'] == 'full-configuration'
        assert 'Contoso' in organization.metadata['hierarchy']

    def test_generated_documents(self, orchestrator, populated_gateway, config_dir):
        result = orchestrator.investigate('full-configuration', 'Contoso')

        assert sorted(p.name for p in result.generated_files) == [
            'discovered-organization.yml',
            'field-mappings.yml',
            'organization-config.yml',
        ]
        mappings = yaml.safe_load((config_dir / 'field-mappings.yml').read_text())
        assert mappings['fieldMappings']['tipoDeHistoria']['allowedValues'] == [
            'Funcional',
            'Técnica',
        ]
        config = yaml.safe_load((config_dir / 'organization-config.yml').read_text())
        assert config['requiredFields']['Bug'] == ['System.Title']

    def test_component_failure_becomes_warning(self, orchestrator, populated_gateway):
        populated_gateway.projects = AzureDevOpsGatewayError('HTTP 503')

        result = orchestrator.investigate('full-configuration', 'Contoso')

        assert result.success
        assert result.status_text == 'completed with warnings'
        assert any(w.startswith('projects step failed') for w in result.warnings)
        assert result.resolved_fields == 2

    def test_include_document(self, orchestrator, populated_gateway):
        result = orchestrator.investigate('full-configuration', 'Contoso', include_document=True)

        assert 'Custom.TipoDeHistoria' in result.document['customFields']
        assert result.to_dict()['document'] is result.document


class TestIncrementalInvestigations:
    def test_status_never_regresses(self, orchestrator, gateway, store, make_field):
        save_organization(
            store,
            FieldDefinition(
                'Custom.TipoDeHistoria',
                type='picklistString',
                is_picklist=True,
                status=FieldStatus.FUNCTIONAL,
                allowed_values=['Funcional'],
            ),
        )
        gateway.fields['Contoso'] = [
            make_field('Custom.TipoDeHistoria', type='string', picklistId='pl-1')
        ]

        result = orchestrator.investigate('custom-fields', 'Contoso')

        tipo = store.reload().custom_fields['Custom.TipoDeHistoria']
        assert tipo.status is FieldStatus.FUNCTIONAL
        assert tipo.allowed_values == ['Funcional']
        assert tipo.picklist_id == 'pl-1'
        assert result.resolved_fields == 0
        assert gateway.count('get') == 0

    def test_unresolvable_fields_are_counted(self, orchestrator, gateway, store):
        save_organization(
            store,
            FieldDefinition(
                'Custom.Origen',
                type='picklistString',
                is_picklist=True,
                status=FieldStatus.NEEDS_INVESTIGATION,
            ),
        )

        result = orchestrator.investigate('picklist-values', 'Contoso')

        assert result.resolved_fields == 0
        assert result.unresolved_fields == 1
        assert '- Custom.Origen: no values found' in result.details
        origen = store.reload().custom_fields['Custom.Origen']
        assert origen.status is FieldStatus.NEEDS_INVESTIGATION

    def test_each_field_is_resolved_once_per_run(self, orchestrator, gateway, store):
        pending = dict(type='picklistString', is_picklist=True, picklist_id='pl-2')
        save_organization(
            store,
            FieldDefinition('Custom.Fase', **pending),
            Bug=[FieldDefinition('Custom.Fase', **pending)],
            Task=[FieldDefinition('Custom.Fase', **pending)],
        )
        gateway.raw['_apis/work/processes/lists/pl-2'] = json.dumps({'items': ['Diseño']})

        result = orchestrator.investigate('picklist-values', 'Contoso')

        assert result.resolved_fields == 1
        assert gateway.count('get') == 1
        organization = store.reload()
        assert organization.work_item_types['Task'].get_field('Custom.Fase').is_functional

    def test_values_known_for_another_type_are_reused(self, orchestrator, gateway, store):
        save_organization(
            store,
            Bug=[
                FieldDefinition(
                    'Custom.Nivel',
                    is_picklist=True,
                    status=FieldStatus.FUNCTIONAL,
                    allowed_values=['1', '2'],
                )
            ],
            Task=[FieldDefinition('Custom.Nivel', is_picklist=True)],
        )

        result = orchestrator.investigate('picklist-values', 'Contoso')

        assert result.resolved_fields == 1
        assert gateway.count('get_field_allowed_values') == 0
        task_field = store.reload().work_item_types['Task'].get_field('Custom.Nivel')
        assert task_field.allowed_values == ['1', '2']

    def test_picklist_values_discovers_fields_when_store_is_empty(
        self, orchestrator, gateway, store, make_field
    ):
        gateway.fields['Contoso'] = [make_field('Custom.Origen', type='string')]
        gateway.allowed_values['Custom.Origen'] = ['Interno']

        result = orchestrator.investigate('picklist-values', 'Contoso')

        assert result.resolved_fields == 1
        assert store.reload().custom_fields['Custom.Origen'].allowed_values == ['Interno']

    def test_empty_type_enumeration_keeps_stored_types(self, orchestrator, gateway, store):
        save_organization(store, Bug=[])

        result = orchestrator.investigate('workitem-types', 'Contoso')

        assert result.status_text == 'completed with warnings'
        assert list(store.reload().work_item_types) == ['Bug']

    def test_type_enumeration_replaces_list(self, orchestrator, gateway, store, make_type):
        save_organization(store, Bug=[], Legacy=[])
        gateway.work_item_types['Contoso'] = [make_type('Bug'), make_type('Tarea')]

        orchestrator.investigate('workitem-types', 'Contoso')

        assert sorted(store.reload().work_item_types) == ['Bug', 'Tarea']

    def test_project_name_does_not_add_types(self, orchestrator, gateway, store, make_type):
        gateway.work_item_types['Bug Tracker'] = [make_type('Issue'), make_type('Tarea')]

        orchestrator.investigate('workitem-types', 'Bug Tracker')

        assert sorted(store.reload().work_item_types) == ['Issue', 'Tarea']


class TestPersistFailure:
    def test_persist_error_propagates(self, orchestrator, populated_gateway, config_dir):
        failure = ConfigurationPersistError('disk full', path=config_dir / 'field-mappings.yml')
        with patch.object(config_store, 'write_yaml_document', side_effect=failure):
            with pytest.raises(ConfigurationPersistError):
                orchestrator.investigate('custom-fields', 'Contoso')

    def test_store_is_usable_after_failure(self, orchestrator, populated_gateway, config_dir):
        with patch.object(
            config_store, 'write_yaml_document', side_effect=ConfigurationPersistError('x')
        ):
            with pytest.raises(ConfigurationPersistError):
                orchestrator.investigate('custom-fields', 'Contoso')

        orchestrator.investigate('custom-fields', 'Contoso')

        assert 'Custom.TipoDeHistoria' in ConfigurationStore(config_dir).load().custom_fields
