"""WIQL query construction helpers."""

from typing import List, Optional, Sequence


DEFAULT_FIELDS = ('System.Id', 'System.Title', 'System.WorkItemType')


def escape_wiql_literal(value: str) -> str:
    """Escape a value for use inside a single-quoted WIQL string literal."""
    return str(value).replace("'", "''")


def build_wiql(
    project: str,
    fields: Sequence[str] = DEFAULT_FIELDS,
    work_item_type: Optional[str] = None,
    area_paths: Optional[Sequence[str]] = None,
    iteration_path: Optional[str] = None,
    extra_conditions: Optional[Sequence[str]] = None,
    order_by: str = '[System.ChangedDate] DESC',
) -> str:
    """Build a flat work item WIQL query scoped to a project.

    Area paths are combined with OR and matched with ``UNDER`` so child areas are
    included; the iteration path is matched with ``UNDER`` as well.

    Args:
        project: Team project name
        fields: Reference names to select
        work_item_type: Optional work item type filter
        area_paths: Optional list of area paths (team scope or explicit area)
        iteration_path: Optional iteration path
        extra_conditions: Additional raw WIQL conditions joined with AND
        order_by: ORDER BY clause body, empty to omit

    Returns:
        The WIQL query text
    """
    select = ', '.join(f'[{field}]' for field in fields)
    conditions: List[str] = [f"[System.TeamProject] = '{escape_wiql_literal(project)}'"]

    if work_item_type:
        conditions.append(f"[System.WorkItemType] = '{escape_wiql_literal(work_item_type)}'")

    if area_paths:
        area_clauses = [
            f"[System.AreaPath] UNDER '{escape_wiql_literal(path)}'" for path in area_paths
        ]
        if len(area_clauses) == 1:
            conditions.append(area_clauses[0])
        else:
            conditions.append('(' + ' OR '.join(area_clauses) + ')')

    if iteration_path:
        conditions.append(
            f"[System.IterationPath] UNDER '{escape_wiql_literal(iteration_path)}'"
        )

    if extra_conditions:
        conditions.extend(extra_conditions)

    query = f'SELECT {select} FROM WorkItems WHERE ' + ' AND '.join(conditions)
    if order_by:
        query += f' ORDER BY {order_by}'
    return query
