"""Parent to child work item type inference from a sample of recent work items."""

import logfire
from collections import Counter
from dataclasses import dataclass, field
from loguru import logger
from tl.azure_devops_discovery_mcp_server.gateway import (
    AzureDevOpsGateway,
    AzureDevOpsGatewayError,
)
from tl.azure_devops_discovery_mcp_server.wiql import escape_wiql_literal
from typing import Any, Dict, List, Mapping, Optional, Tuple


MAX_SAMPLE_SIZE = 50

RECENT_WORK_ITEMS_QUERY = (
    'SELECT [System.Id], [System.Title], [System.WorkItemType] FROM WorkItems '
    "WHERE [System.TeamProject] = '{project}' ORDER BY [System.ChangedDate] DESC"
)


def rank_child_types(counts: Mapping[str, int]) -> List[Tuple[str, int]]:
    """Descending by count, ties broken alphabetically by type name."""
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


@dataclass
class HierarchyAnalysis:
    project: str
    total_analyzed: int = 0
    total_available: int = 0
    child_type_distribution: Dict[str, int] = field(default_factory=dict)
    parent_child_relations: Dict[str, List[str]] = field(default_factory=dict)
    detailed_statistics: Dict[str, Dict[str, int]] = field(default_factory=dict)
    most_common_child_types: List[Tuple[str, int]] = field(default_factory=list)
    skipped_items: int = 0
    message: str = ''
    error: Optional[str] = None

    @property
    def total_child_work_items(self) -> int:
        return sum(self.child_type_distribution.values())

    @property
    def has_relations(self) -> bool:
        return bool(self.parent_child_relations)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'project': self.project,
            'totalWorkItemsAnalyzed': self.total_analyzed,
            'totalWorkItemsAvailable': self.total_available,
            'totalChildWorkItems': self.total_child_work_items,
            'childTypeDistribution': dict(self.child_type_distribution),
            'parentChildRelations': {k: list(v) for k, v in self.parent_child_relations.items()},
            'detailedStatistics': {k: dict(v) for k, v in self.detailed_statistics.items()},
            'mostCommonChildTypes': [
                {'type': name, 'count': count} for name, count in self.most_common_child_types
            ],
            'skippedItems': self.skipped_items,
        }
        if self.message:
            data['message'] = self.message
        if self.error:
            data['error'] = self.error
        return data


class HierarchyAnalyzer:
    """Infers which work item types are used as children of which parents."""

    def __init__(self, gateway: AzureDevOpsGateway) -> None:
        self.gateway = gateway

    def _parent_type(self, parent_id: int, cache: Dict[int, Optional[str]]) -> Optional[str]:
        if parent_id not in cache:
            cache[parent_id] = self.gateway.get_work_item(parent_id, expand='').work_item_type
        return cache[parent_id]

    def analyze(self, project: str, sample_size: int = MAX_SAMPLE_SIZE) -> HierarchyAnalysis:
        """Analyze up to ``sample_size`` (at most 50) most recently changed work items.

        Items without a parent are ignored. Errors on individual items are logged and
        the item is skipped. Never raises.
        """
        sample_size = max(1, min(sample_size, MAX_SAMPLE_SIZE))
        analysis = HierarchyAnalysis(project=project)

        query = RECENT_WORK_ITEMS_QUERY.format(project=escape_wiql_literal(project))
        try:
            ids = self.gateway.execute_query(project, query, top=sample_size)
        except AzureDevOpsGatewayError as e:
            logger.error(f'Hierarchy analysis query failed for {project}: {str(e)}')
            analysis.error = f'Error during analysis: {str(e)}'
            return analysis

        analysis.total_available = len(ids)
        if not ids:
            analysis.message = f'No work items found in project {project}'
            return analysis

        sample = ids[:sample_size]
        analysis.total_analyzed = len(sample)

        child_counts: Counter = Counter()
        per_parent: Dict[str, Counter] = {}
        parent_cache: Dict[int, Optional[str]] = {}

        for work_item_id in sample:
            try:
                item = self.gateway.get_work_item(work_item_id, expand='Relations')
                parent_id = item.parent_id
                child_type = item.work_item_type
                if parent_id is None or not child_type:
                    continue

                parent_type = self._parent_type(parent_id, parent_cache)
                if not parent_type:
                    continue
                child_counts[child_type] += 1
                per_parent.setdefault(parent_type, Counter())[child_type] += 1
            except AzureDevOpsGatewayError as e:
                analysis.skipped_items += 1
                logger.warning(f'Skipping work item {work_item_id} in {project}: {str(e)}')

        analysis.child_type_distribution = dict(sorted(child_counts.items()))
        analysis.detailed_statistics = {
            parent: dict(rank_child_types(children))
            for parent, children in sorted(per_parent.items())
        }
        analysis.parent_child_relations = {
            parent: sorted(children) for parent, children in sorted(per_parent.items())
        }
        analysis.most_common_child_types = rank_child_types(child_counts)

        if not analysis.parent_child_relations:
            analysis.message = (
                f'No parent-child relations found in the sample of {analysis.total_analyzed} '
                'work items'
            )

        logger.info(
            f'Hierarchy analysis of {project}: {analysis.total_child_work_items} child items, '
            f'{len(analysis.parent_child_relations)} parent types'
        )
        logfire.info(
            'Analyzed work item hierarchy',
            project=project,
            analyzed=analysis.total_analyzed,
            relations=len(analysis.parent_child_relations),
            skipped=analysis.skipped_items,
        )
        return analysis


def generate_subtask_patterns_documentation(analyses: Mapping[str, HierarchyAnalysis]) -> str:
    """Consolidated report of the hierarchy patterns seen across projects."""
    lines = ['## Hierarchy Patterns', '']
    global_relations: Dict[str, set] = {}
    global_counts: Counter = Counter()

    for project_name in sorted(analyses):
        analysis = analyses[project_name]
        if analysis.error:
            lines.append(f'**{project_name}**: {analysis.error}')
            lines.append('')
            continue

        lines.append(f'### Project: {project_name}')
        if analysis.has_relations:
            lines.append(f'- Total child work items: {analysis.total_child_work_items}')
            for parent_type, children in analysis.parent_child_relations.items():
                lines.append(
                    f'- **{parent_type}** can have children of type: {", ".join(children)}'
                )
                global_relations.setdefault(parent_type, set()).update(children)
            global_counts.update(analysis.child_type_distribution)
        else:
            lines.append(f'- {analysis.message or "No parent-child relations found"}')
        lines.append('')

    lines.append('## Global Patterns')
    lines.append('')
    if global_relations:
        lines.append('**Parent-child relations detected:**')
        for parent_type in sorted(global_relations):
            children = ', '.join(sorted(global_relations[parent_type]))
            lines.append(f'- **{parent_type}** -> [{children}]')
        lines.append('')
        lines.append('**Most used child types:**')
        for name, count in rank_child_types(global_counts):
            lines.append(f'- **{name}**: {count} instances')
    else:
        lines.append('No parent-child relations detected in any project.')

    return '\n'.join(lines)
