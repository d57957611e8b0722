"""Shared fixtures for the discovery server tests."""

import pytest
from collections import Counter
from datetime import datetime, timezone

from tl.azure_devops_discovery_mcp_server.config_store import ConfigurationStore
from tl.azure_devops_discovery_mcp_server.dtos import (
    ClassificationNodeDTO,
    FieldDTO,
    TeamFieldValuesDTO,
    WorkItemDTO,
    WorkItemTypeDTO,
)
from tl.azure_devops_discovery_mcp_server.gateway import AzureDevOpsGatewayError


def _answer(value):
    if isinstance(value, Exception):
        raise value
    return value


def not_found(path):
    return AzureDevOpsGatewayError(f'HTTP 404 from {path}', endpoint=path, status_code=404)


class FakeGateway:
    """In-memory stand-in for AzureDevOpsGateway that records every call."""

    organization_url = 'https://dev.azure.com/contoso/'

    def __init__(self):
        self.calls = []
        self.raw = {}
        self.allowed_values = {}
        self.work_item_types = {}
        self.type_fields = {}
        self.fields = {}
        self.query_ids = []
        self.queries = []
        self.work_items = {}
        self.projects = []
        self.teams = {}
        self.iterations = {}
        self.team_field_values = {}
        self.area_trees = {}

    def count(self, name):
        return Counter(call[0] for call in self.calls)[name]

    def get(self, path, params=None):
        self.calls.append(('get', path))
        if path not in self.raw:
            raise not_found(path)
        return _answer(self.raw[path])

    def get_field_allowed_values(self, project, field_reference_name):
        self.calls.append(('get_field_allowed_values', project, field_reference_name))
        return list(_answer(self.allowed_values.get(field_reference_name, [])))

    def get_work_item_types(self, project):
        self.calls.append(('get_work_item_types', project))
        return _answer(self.work_item_types.get(project, []))

    def get_work_item_type_fields(self, project, work_item_type):
        self.calls.append(('get_work_item_type_fields', project, work_item_type))
        return _answer(self.type_fields.get(work_item_type, []))

    def get_fields(self, project):
        self.calls.append(('get_fields', project))
        return _answer(self.fields.get(project, []))

    def execute_query(self, project, query, top=None):
        self.calls.append(('execute_query', project))
        self.queries.append(query)
        ids = list(_answer(self.query_ids))
        return ids[:top] if top else ids

    def get_work_item(self, work_item_id, expand='Relations'):
        self.calls.append(('get_work_item', work_item_id, expand))
        if work_item_id not in self.work_items:
            raise not_found(f'_apis/wit/workitems/{work_item_id}')
        return _answer(self.work_items[work_item_id])

    def get_work_items(self, ids, fields=None):
        self.calls.append(('get_work_items', tuple(ids)))
        items = []
        for work_item_id in ids:
            item = self.work_items.get(work_item_id)
            if isinstance(item, WorkItemDTO):
                items.append(item)
        return items

    def list_projects(self):
        self.calls.append(('list_projects',))
        return _answer(self.projects)

    def list_teams(self, project):
        self.calls.append(('list_teams', project))
        return _answer(self.teams.get(project, []))

    def list_iterations(self, project, team, timeframe=None):
        self.calls.append(('list_iterations', project, team))
        return _answer(self.iterations.get(team, []))

    def get_team_field_values(self, project, team):
        self.calls.append(('get_team_field_values', project, team))
        return _answer(self.team_field_values.get(team, TeamFieldValuesDTO()))

    def get_area_tree(self, project, depth=2):
        self.calls.append(('get_area_tree', project))
        return _answer(self.area_trees.get(project, ClassificationNodeDTO(name=project)))


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / 'config'
    directory.mkdir()
    return directory


@pytest.fixture
def store(config_dir):
    return ConfigurationStore(config_dir=config_dir)


@pytest.fixture
def fixed_clock():
    now = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)
    return lambda: now


@pytest.fixture
def make_work_item():
    def factory(work_item_id, work_item_type, parent=None, **fields):
        data = {'System.WorkItemType': work_item_type}
        if parent is not None:
            data['System.Parent'] = parent
        for key, value in fields.items():
            data[key.replace('__', '.')] = value
        return WorkItemDTO(id=work_item_id, fields=data)

    return factory


@pytest.fixture
def make_field():
    def factory(reference_name, **payload):
        return FieldDTO.model_validate(
            {'referenceName': reference_name, 'name': reference_name.split('.')[-1], **payload}
        )

    return factory


@pytest.fixture
def make_type():
    def factory(name, disabled=False, states=('New', 'Active', 'Closed'), fields=()):
        return WorkItemTypeDTO.model_validate(
            {
                'name': name,
                'isDisabled': disabled,
                'states': [{'name': s} for s in states],
                'fields': [{'referenceName': f} for f in fields],
            }
        )

    return factory
