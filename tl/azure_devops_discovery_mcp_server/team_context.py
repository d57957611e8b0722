"""Descriptive analytics scoped to a team, area path or iteration path.

Every operation is read-only: it samples at most 200 work items with one WIQL query
and one batch fetch, computes simple statistics and renders a text report. Gateway
failures are reported in the text instead of being raised.
"""

import re
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from loguru import logger
from tl.azure_devops_discovery_mcp_server.dtos import WorkItemDTO
from tl.azure_devops_discovery_mcp_server.gateway import (
    AzureDevOpsGateway,
    AzureDevOpsGatewayError,
)
from tl.azure_devops_discovery_mcp_server.organization import SYSTEM_FIELD_PREFIXES, TeamAnalysis
from tl.azure_devops_discovery_mcp_server.wiql import build_wiql
from typing import Any, Callable, Dict, List, Optional, Sequence


SAMPLE_LIMIT = 200
ACTIVITY_WINDOW_DAYS = 30
VELOCITY_ITERATIONS = 6
TREND_TOLERANCE = 0.10

COMPLETED_STATES = {
    'closed',
    'done',
    'resolved',
    'completed',
    'cerrado',
    'terminado',
    'hecho',
    'finalizado',
}

STORY_POINT_FIELDS = (
    'Microsoft.VSTS.Scheduling.StoryPoints',
    'Microsoft.VSTS.Scheduling.Effort',
    'Microsoft.VSTS.Scheduling.Size',
)

TEAM_CATEGORY_KEYWORDS = {
    'development': ('dev', 'desarrollo', 'backend', 'frontend', 'mobile', 'api', 'platform'),
    'qa': ('qa', 'test', 'testing', 'quality', 'calidad', 'pruebas'),
    'operations': ('ops', 'devops', 'infra', 'infrastructure', 'operaciones', 'sre'),
    'support': ('support', 'soporte', 'helpdesk', 'service desk', 'mesa de ayuda'),
    'management': ('pmo', 'management', 'gestion', 'gestión', 'governance', 'gobierno'),
}

_TEAM_NAME_SEPARATOR = re.compile(r'\s+-\s+|[_\-\s]+')
_DATE_PATTERN = re.compile(r'^(\d{4}-\d{2}-\d{2})(?:[T ](\d{2}:\d{2}:\d{2}))?')


def parse_date(value: Any) -> Optional[datetime]:
    """Parse an Azure DevOps timestamp to an aware UTC datetime (seconds precision)."""
    if not value:
        return None
    match = _DATE_PATTERN.match(str(value))
    if match is None:
        return None
    text = match.group(1) + 'T' + (match.group(2) or '00:00:00')
    try:
        parsed = datetime.strptime(text, '%Y-%m-%dT%H:%M:%S')
    except ValueError:
        logger.debug(f'Ignoring invalid date {value!r}')
        return None
    return parsed.replace(tzinfo=timezone.utc)


def display_value(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    if isinstance(value, dict):
        return value.get('displayName') or value.get('uniqueName')
    return str(value)


def is_completed_state(state: Optional[str]) -> bool:
    return bool(state) and state.lower() in COMPLETED_STATES


def compute_velocity_trend(values: Sequence[float]) -> str:
    """Compare the averages of the first and second halves with a 10% band."""
    if len(values) < 2:
        return 'insufficient data'
    middle = len(values) // 2
    first = values[:middle]
    second = values[len(values) - middle :]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    if first_avg == 0:
        return 'ascending' if second_avg > 0 else 'stable'
    if second_avg > first_avg * (1 + TREND_TOLERANCE):
        return 'ascending'
    if second_avg < first_avg * (1 - TREND_TOLERANCE):
        return 'descending'
    return 'stable'


def detect_team_prefix(team_name: str) -> Optional[str]:
    """First token of a structured team name (``ABC - Payments`` -> ``ABC``)."""
    tokens = [t for t in _TEAM_NAME_SEPARATOR.split(team_name.strip()) if t]
    if len(tokens) < 2:
        return None
    return tokens[0]


def categorize_team(team_name: str, description: str = '') -> str:
    text = f'{team_name} {description}'.lower()
    words = set(re.findall(r'\w+', text))
    for category, keywords in TEAM_CATEGORY_KEYWORDS.items():
        for keyword in keywords:
            if (' ' in keyword and keyword in text) or keyword in words:
                return category
    return 'other'


def _format_counts(counts: Counter, total: int, limit: Optional[int] = None) -> List[str]:
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ranked = ranked[:limit]
    lines = []
    for name, count in ranked:
        share = (count / total * 100) if total else 0
        lines.append(f'- {name}: {count} ({share:.1f}%)')
    return lines or ['- (none)']


@dataclass
class AnalysisScope:
    project: str
    team: Optional[str] = None
    area_path: Optional[str] = None
    iteration_path: Optional[str] = None

    def describe(self) -> str:
        parts = [f'project "{self.project}"']
        if self.team:
            parts.append(f'team "{self.team}"')
        if self.area_path:
            parts.append(f'area "{self.area_path}"')
        if self.iteration_path:
            parts.append(f'iteration "{self.iteration_path}"')
        return ', '.join(parts)


class TeamContextAnalyzer:
    """Read-only analytics over a bounded sample of scoped work items."""

    def __init__(
        self,
        gateway: AzureDevOpsGateway,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.gateway = gateway
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def _area_paths(self, scope: AnalysisScope) -> Optional[List[str]]:
        if scope.area_path:
            return [scope.area_path]
        if scope.team:
            team_values = self.gateway.get_team_field_values(scope.project, scope.team)
            paths = [v.value for v in team_values.values]
            if not paths and team_values.default_value:
                paths = [team_values.default_value]
            return paths or None
        return None

    def _sample(
        self,
        scope: AnalysisScope,
        extra_conditions: Optional[Sequence[str]] = None,
        iteration_path: Optional[str] = None,
    ) -> List[WorkItemDTO]:
        query = build_wiql(
            scope.project,
            fields=('System.Id',),
            area_paths=self._area_paths(scope),
            iteration_path=iteration_path or scope.iteration_path,
            extra_conditions=extra_conditions,
        )
        ids = self.gateway.execute_query(scope.project, query, top=SAMPLE_LIMIT)[:SAMPLE_LIMIT]
        if not ids:
            return []
        return self.gateway.get_work_items(ids)

    def _run(self, title: str, scope: AnalysisScope, render: Callable[[], List[str]]) -> str:
        header = [f'# {title}', f'Scope: {scope.describe()}', '']
        try:
            body = render()
        except AzureDevOpsGatewayError as e:
            logger.warning(f'{title} failed for {scope.describe()}: {str(e)}')
            body = [f'Error: could not query Azure DevOps ({str(e)})']
        return '\n'.join(header + body)

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def analyze_work_item_distribution(
        self,
        project: str,
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
    ) -> str:
        """Counts of sampled work items by type, state and area."""
        scope = AnalysisScope(project, team, area_path, iteration_path)

        def render() -> List[str]:
            items = self._sample(scope)
            if not items:
                return ['No work items found in scope.']
            total = len(items)
            by_type = Counter(i.work_item_type or '(unknown)' for i in items)
            by_state = Counter(i.fields.get('System.State') or '(unknown)' for i in items)
            by_area = Counter(i.fields.get('System.AreaPath') or '(unknown)' for i in items)
            return (
                [f'Work items analyzed: {total}', '', '## By type']
                + _format_counts(by_type, total)
                + ['', '## By state']
                + _format_counts(by_state, total)
                + ['', '## By area']
                + _format_counts(by_area, total, limit=10)
            )

        return self._run('Work Item Distribution', scope, render)

    def analyze_team_activity(
        self,
        project: str,
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
    ) -> str:
        """Items created and closed in the last 30 days and the most active assignees."""
        scope = AnalysisScope(project, team, area_path, iteration_path)

        def render() -> List[str]:
            since = self.clock() - timedelta(days=ACTIVITY_WINDOW_DAYS)
            recent = f'[System.ChangedDate] >= @Today - {ACTIVITY_WINDOW_DAYS}'
            items = self._sample(scope, extra_conditions=[recent])
            if not items:
                return [f'No work items changed in the last {ACTIVITY_WINDOW_DAYS} days.']

            created = 0
            closed = 0
            assignees: Counter = Counter()
            for item in items:
                created_date = parse_date(item.fields.get('System.CreatedDate'))
                closed_date = parse_date(item.fields.get('Microsoft.VSTS.Common.ClosedDate'))
                if created_date and created_date >= since:
                    created += 1
                if closed_date and closed_date >= since:
                    closed += 1
                assignee = display_value(item.fields.get('System.AssignedTo'))
                if assignee:
                    assignees[assignee] += 1

            return (
                [
                    f'Work items changed in the last {ACTIVITY_WINDOW_DAYS} days: {len(items)}',
                    f'Created: {created}',
                    f'Closed: {closed}',
                    '',
                    '## Most active assignees',
                ]
                + _format_counts(assignees, len(items), limit=5)
            )

        return self._run('Team Activity', scope, render)

    def analyze_team_velocity(
        self,
        project: str,
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
    ) -> str:
        """Completed items and story points over the team's last six past iterations."""
        scope = AnalysisScope(project, team, area_path, iteration_path)

        def render() -> List[str]:
            if not team:
                return ['Velocity analysis requires a team.']

            now = self.clock()
            iterations = self.gateway.list_iterations(project, team)
            past = []
            for iteration in iterations:
                finish = parse_date(iteration.attributes.finish_date)
                time_frame = (iteration.attributes.time_frame or '').lower()
                if time_frame == 'past' or (finish is not None and finish < now):
                    past.append((finish or datetime.min.replace(tzinfo=timezone.utc), iteration))
            past.sort(key=lambda entry: (entry[0], entry[1].name))
            recent = [iteration for _, iteration in past[-VELOCITY_ITERATIONS:]]
            if not recent:
                return ['No completed iterations found for this team.']

            lines = ['## Iterations']
            points_series: List[float] = []
            items_series: List[float] = []
            for iteration in recent:
                items = self._sample(scope, iteration_path=iteration.path or iteration.name)
                done = [i for i in items if is_completed_state(i.fields.get('System.State'))]
                points = sum(_story_points(i) for i in done)
                points_series.append(points)
                items_series.append(len(done))
                lines.append(f'- {iteration.name}: {len(done)} items completed, {points:g} points')

            series = points_series if any(points_series) else items_series
            unit = 'points' if any(points_series) else 'items'
            average = sum(series) / len(series)
            lines += [
                '',
                f'Average velocity: {average:.1f} {unit} per iteration',
                f'Trend: {compute_velocity_trend(series)}',
            ]
            return lines

        return self._run('Team Velocity', scope, render)

    def _custom_field_usage(self, items: List[WorkItemDTO]) -> List[str]:
        filled: Counter = Counter()
        values: Dict[str, Counter] = defaultdict(Counter)
        for item in items:
            for reference_name, value in item.fields.items():
                if reference_name.startswith(SYSTEM_FIELD_PREFIXES):
                    continue
                text = display_value(value)
                if text is None:
                    continue
                filled[reference_name] += 1
                values[reference_name][text] += 1

        if not filled:
            return ['No custom fields populated in the sampled work items.']

        total = len(items)
        lines = [f'Work items analyzed: {total}', '']
        for reference_name, count in sorted(filled.items(), key=lambda i: (-i[1], i[0])):
            top = sorted(values[reference_name].items(), key=lambda i: (-i[1], i[0]))[:3]
            top_text = ', '.join(f'{v} ({c})' for v, c in top)
            lines.append(
                f'- {reference_name}: filled in {count}/{total} ({count / total * 100:.1f}%); '
                f'top values: {top_text}'
            )
        return lines

    def analyze_area_specific_fields(
        self,
        project: str,
        area_path: str,
        team: Optional[str] = None,
        iteration_path: Optional[str] = None,
    ) -> str:
        """Custom field fill rate and most common values within an area."""
        scope = AnalysisScope(project, team, area_path, iteration_path)

        def render() -> List[str]:
            items = self._sample(scope)
            if not items:
                return ['No work items found in scope.']
            return self._custom_field_usage(items)

        return self._run('Area-Specific Fields', scope, render)

    def analyze_custom_fields_usage(
        self,
        project: str,
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
    ) -> str:
        scope = AnalysisScope(project, team, area_path, iteration_path)

        def render() -> List[str]:
            items = self._sample(scope)
            if not items:
                return ['No work items found in scope.']
            return self._custom_field_usage(items)

        return self._run('Custom Fields Usage', scope, render)

    def analyze_workflow_patterns(
        self,
        project: str,
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
    ) -> str:
        """State distribution per type, time in current state and the bottleneck state."""
        scope = AnalysisScope(project, team, area_path, iteration_path)

        def render() -> List[str]:
            items = self._sample(scope)
            if not items:
                return ['No work items found in scope.']

            now = self.clock()
            states_by_type: Dict[str, Counter] = defaultdict(Counter)
            days_in_state: Dict[str, List[float]] = defaultdict(list)
            for item in items:
                state = item.fields.get('System.State') or '(unknown)'
                states_by_type[item.work_item_type or '(unknown)'][state] += 1
                changed = parse_date(
                    item.fields.get('Microsoft.VSTS.Common.StateChangeDate')
                    or item.fields.get('System.ChangedDate')
                )
                if changed is not None:
                    days_in_state[state].append(max((now - changed).total_seconds(), 0) / 86400)

            lines = ['## States by type']
            for type_name in sorted(states_by_type):
                counts = states_by_type[type_name]
                summary = ', '.join(
                    f'{s}: {c}' for s, c in sorted(counts.items(), key=lambda i: (-i[1], i[0]))
                )
                lines.append(f'- {type_name}: {summary}')

            lines += ['', '## Average days in current state']
            averages = {s: sum(d) / len(d) for s, d in days_in_state.items() if d}
            for state in sorted(averages):
                lines.append(f'- {state}: {averages[state]:.1f} days')

            open_states = {s: a for s, a in averages.items() if not is_completed_state(s)}
            if open_states:
                bottleneck = sorted(open_states.items(), key=lambda i: (-i[1], i[0]))[0]
                lines += ['', f'Bottleneck state: {bottleneck[0]} ({bottleneck[1]:.1f} days)']
            return lines

        return self._run('Workflow Patterns', scope, render)

    def analyze_hierarchy_patterns(
        self,
        project: str,
        team: Optional[str] = None,
        area_path: Optional[str] = None,
        iteration_path: Optional[str] = None,
    ) -> str:
        """Parent to child type pairs among the work items of the scope."""
        scope = AnalysisScope(project, team, area_path, iteration_path)

        def render() -> List[str]:
            items = self._sample(scope)
            if not items:
                return ['No work items found in scope.']

            types = {i.id: i.work_item_type for i in items}
            parent_ids = {i.parent_id for i in items if i.parent_id is not None}
            missing = sorted(pid for pid in parent_ids if pid not in types)
            if missing:
                for parent in self.gateway.get_work_items(missing, fields=['System.WorkItemType']):
                    types[parent.id] = parent.work_item_type

            pairs: Counter = Counter()
            for item in items:
                parent_type = types.get(item.parent_id) if item.parent_id is not None else None
                if parent_type and item.work_item_type:
                    pairs[f'{parent_type} -> {item.work_item_type}'] += 1

            if not pairs:
                return ['No parent-child relations found in scope.']
            return [f'Linked work items: {sum(pairs.values())}', ''] + _format_counts(
                pairs, sum(pairs.values())
            )

        return self._run('Hierarchy Patterns', scope, render)

    def analyze_team(self, team_name: str, description: str = '') -> TeamAnalysis:
        """Naming prefix and functional category of a team."""
        prefix = detect_team_prefix(team_name)
        category = categorize_team(team_name, description)
        summary = f'{category} team' + (f' (prefix {prefix})' if prefix else '')
        return TeamAnalysis(detected_prefix=prefix, category=category, description=summary)


def _story_points(item: WorkItemDTO) -> float:
    for reference_name in STORY_POINT_FIELDS:
        value = item.fields.get(reference_name)
        if value not in (None, ''):
            try:
                return float(value)
            except (TypeError, ValueError):
                return 0.0
    return 0.0
