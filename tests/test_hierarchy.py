"""Tests for parent/child hierarchy inference."""

from tl.azure_devops_discovery_mcp_server.dtos import WorkItemDTO
from tl.azure_devops_discovery_mcp_server.gateway import AzureDevOpsGatewayError
from tl.azure_devops_discovery_mcp_server.hierarchy import (
    HierarchyAnalysis,
    HierarchyAnalyzer,
    generate_subtask_patterns_documentation,
    rank_child_types,
)


class TestRankChildTypes:
    def test_descending_count(self):
        assert rank_child_types({'Task': 2, 'Bug': 5}) == [('Bug', 5), ('Task', 2)]

    def test_ties_broken_alphabetically(self):
        assert rank_child_types({'Task': 3, 'Bug': 3, 'Subtarea': 3}) == [
            ('Bug', 3),
            ('Subtarea', 3),
            ('Task', 3),
        ]


class TestHierarchyAnalyzer:
    def test_sample_without_parents(self, gateway, make_work_item):
        gateway.query_ids = [1, 2, 3]
        for work_item_id in (1, 2, 3):
            gateway.work_items[work_item_id] = make_work_item(work_item_id, 'Task')

        analysis = HierarchyAnalyzer(gateway).analyze('Contoso')

        assert analysis.child_type_distribution == {}
        assert analysis.parent_child_relations == {}
        assert analysis.total_analyzed == 3
        assert analysis.message == 'No parent-child relations found in the sample of 3 work items'
        assert analysis.error is None

    def test_relations_and_statistics(self, gateway, make_work_item):
        gateway.query_ids = [10, 11, 12, 13]
        gateway.work_items[10] = make_work_item(10, 'Task', parent=1)
        gateway.work_items[11] = make_work_item(11, 'Bug', parent=1)
        gateway.work_items[12] = make_work_item(12, 'Task', parent=2)
        gateway.work_items[13] = make_work_item(13, 'Feature')
        gateway.work_items[1] = make_work_item(1, 'User Story')
        gateway.work_items[2] = make_work_item(2, 'User Story')

        analysis = HierarchyAnalyzer(gateway).analyze('Contoso')

        assert analysis.child_type_distribution == {'Bug': 1, 'Task': 2}
        assert analysis.parent_child_relations == {'User Story': ['Bug', 'Task']}
        assert analysis.detailed_statistics == {'User Story': {'Task': 2, 'Bug': 1}}
        assert analysis.most_common_child_types == [('Task', 2), ('Bug', 1)]
        assert analysis.total_child_work_items == 3
        assert analysis.message == ''

    def test_parent_from_hierarchy_reverse_relation(self, gateway, make_work_item):
        gateway.query_ids = [20]
        gateway.work_items[20] = WorkItemDTO.model_validate(
            {
                'id': 20,
                'fields': {'System.WorkItemType': 'Tarea'},
                'relations': [
                    {
                        'rel': 'System.LinkTypes.Hierarchy-Reverse',
                        'url': 'https://dev.azure.com/contoso/_apis/wit/workItems/7',
                    }
                ],
            }
        )
        gateway.work_items[7] = make_work_item(7, 'Historia')

        analysis = HierarchyAnalyzer(gateway).analyze('Contoso')

        assert analysis.parent_child_relations == {'Historia': ['Tarea']}

    def test_parent_types_are_memoized(self, gateway, make_work_item):
        gateway.query_ids = [10, 11]
        gateway.work_items[10] = make_work_item(10, 'Task', parent=1)
        gateway.work_items[11] = make_work_item(11, 'Task', parent=1)
        gateway.work_items[1] = make_work_item(1, 'User Story')

        HierarchyAnalyzer(gateway).analyze('Contoso')

        parent_lookups = [c for c in gateway.calls if c[0] == 'get_work_item' and c[1] == 1]
        assert len(parent_lookups) == 1

    def test_failing_items_are_skipped(self, gateway, make_work_item):
        gateway.query_ids = [10, 11]
        gateway.work_items[10] = AzureDevOpsGatewayError('HTTP 403')
        gateway.work_items[11] = make_work_item(11, 'Task', parent=1)
        gateway.work_items[1] = make_work_item(1, 'Feature')

        analysis = HierarchyAnalyzer(gateway).analyze('Contoso')

        assert analysis.skipped_items == 1
        assert analysis.parent_child_relations == {'Feature': ['Task']}

    def test_unreadable_parent_is_not_counted(self, gateway, make_work_item):
        gateway.query_ids = [10]
        gateway.work_items[10] = make_work_item(10, 'Task', parent=1)

        analysis = HierarchyAnalyzer(gateway).analyze('Contoso')

        assert analysis.skipped_items == 1
        assert analysis.child_type_distribution == {}
        assert analysis.most_common_child_types == []
        assert analysis.message == 'No parent-child relations found in the sample of 1 work items'

    def test_sample_is_capped_at_fifty(self, gateway, make_work_item):
        gateway.query_ids = list(range(1, 81))
        for work_item_id in gateway.query_ids:
            gateway.work_items[work_item_id] = make_work_item(work_item_id, 'Task')

        analysis = HierarchyAnalyzer(gateway).analyze('Contoso', sample_size=500)

        assert analysis.total_analyzed == 50
        assert gateway.count('get_work_item') == 50

    def test_query_failure_is_reported_not_raised(self, gateway):
        gateway.query_ids = AzureDevOpsGatewayError('HTTP 401')

        analysis = HierarchyAnalyzer(gateway).analyze('Contoso')

        assert analysis.error == 'Error during analysis: HTTP 401'
        assert analysis.total_analyzed == 0

    def test_project_name_is_escaped_in_query(self, gateway):
        HierarchyAnalyzer(gateway).analyze("O'Neil")

        assert "[System.TeamProject] = 'O''Neil'" in gateway.queries[0]


class TestSubtaskPatternsDocumentation:
    def test_deterministic_report(self):
        first = HierarchyAnalysis(
            project='Beta',
            child_type_distribution={'Task': 2},
            parent_child_relations={'User Story': ['Task']},
        )
        second = HierarchyAnalysis(
            project='Alpha',
            child_type_distribution={'Bug': 2, 'Task': 1},
            parent_child_relations={'Feature': ['Bug'], 'User Story': ['Task']},
        )

        report = generate_subtask_patterns_documentation({'Beta': first, 'Alpha': second})

        assert report.index('### Project: Alpha') < report.index('### Project: Beta')
        assert '- **User Story** -> [Task]' in report
        assert report.index('**Task**: 3 instances') < report.index('**Bug**: 2 instances')
        assert report == generate_subtask_patterns_documentation({'Alpha': second, 'Beta': first})

    def test_projects_without_relations(self):
        analysis = HierarchyAnalysis(
            project='Empty', message='No work items found in project Empty'
        )

        report = generate_subtask_patterns_documentation({'Empty': analysis})

        assert '- No work items found in project Empty' in report
        assert 'No parent-child relations detected in any project.' in report
