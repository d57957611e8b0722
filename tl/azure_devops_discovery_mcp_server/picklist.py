"""Picklist value resolution.

Azure DevOps exposes the values of an enumerated field through different endpoint
shapes depending on how the process was customized. ``PicklistResolver`` walks an
ordered chain of strategies, most specific first, and returns the first non-empty
answer.
"""

import json
import re
from dataclasses import dataclass
from loguru import logger
from pydantic import ValidationError
from tl.azure_devops_discovery_mcp_server.dtos import PicklistDTO, ValueListDTO
from tl.azure_devops_discovery_mcp_server.gateway import (
    AzureDevOpsGateway,
    AzureDevOpsGatewayError,
)
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote


@dataclass(frozen=True)
class PicklistContext:
    project: str
    field_reference_name: str
    picklist_id: Optional[str] = None


def _dedupe(values: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v != ''))


def _unescape(literal: str) -> str:
    try:
        return json.loads(f'"{literal}"')
    except ValueError:
        return literal


def extract_array_values(text: str, key: str) -> List[str]:
    """Pull the string values of the ``key`` array out of non-JSON text.

    Only used when a body cannot be decoded as JSON. Handles arrays of string
    literals and arrays of ``{"value": "..."}`` objects.
    """
    match = re.search(rf'"{re.escape(key)}"\s*:\s*\[(.*?)\]', text, re.DOTALL)
    if match is None:
        return []
    body = match.group(1)
    if '{' in body:
        literals = re.findall(r'"value"\s*:\s*"((?:[^"\\]|\\.)*)"', body)
    else:
        literals = re.findall(r'"((?:[^"\\]|\\.)*)"', body)
    return _dedupe([_unescape(literal) for literal in literals])


def parse_picklist_payload(text: str) -> List[str]:
    """Values of a process list body (``items``) or a ``value`` envelope."""
    try:
        data = json.loads(text)
    except ValueError:
        logger.debug('Picklist body is not valid JSON, falling back to text extraction')
        return extract_array_values(text, 'items') or extract_array_values(text, 'value')

    try:
        if isinstance(data, dict) and 'items' in data:
            return _dedupe(PicklistDTO.model_validate(data).items)
        if isinstance(data, dict):
            envelope = ValueListDTO.model_validate(data)
            return _dedupe([str(v) for v in envelope.value if v is not None])
        if isinstance(data, list):
            return _dedupe([str(v) for v in data if v is not None])
    except ValidationError as e:
        logger.debug(f'Unexpected picklist payload shape: {str(e)}')
    return []


class PicklistStrategy:
    """One way of asking the server for a field's allowed values."""

    name = 'base'

    def __init__(self, gateway: AzureDevOpsGateway) -> None:
        self.gateway = gateway

    def try_resolve(self, context: PicklistContext) -> Optional[List[str]]:
        """Return a non-empty value list, or None to pass to the next strategy."""
        raise NotImplementedError


class OrganizationProcessListStrategy(PicklistStrategy):
    """Organization-level process list looked up by picklist id."""

    name = 'organization process list'

    def try_resolve(self, context: PicklistContext) -> Optional[List[str]]:
        if not context.picklist_id:
            return None
        text = self.gateway.get(f'_apis/work/processes/lists/{quote(context.picklist_id)}')
        return parse_picklist_payload(text) or None


class ProjectProcessListStrategy(PicklistStrategy):
    """Project-scoped process list, for templates not visible at organization level."""

    name = 'project process list'

    def try_resolve(self, context: PicklistContext) -> Optional[List[str]]:
        if not context.picklist_id:
            return None
        path = (
            f'{quote(context.project, safe="")}/_apis/work/processes/lists/'
            f'{quote(context.picklist_id)}'
        )
        return parse_picklist_payload(self.gateway.get(path)) or None


class FieldAllowedValuesStrategy(PicklistStrategy):
    """Field-specific allowed values endpoint, usable without a shared list object."""

    name = 'field allowed values'

    def try_resolve(self, context: PicklistContext) -> Optional[List[str]]:
        values = self.gateway.get_field_allowed_values(
            context.project, context.field_reference_name
        )
        return _dedupe(values) or None


class PicklistResolver:
    """Resolves allowed values through an ordered chain of strategies."""

    def __init__(
        self,
        gateway: AzureDevOpsGateway,
        strategies: Optional[Sequence[PicklistStrategy]] = None,
    ) -> None:
        self.gateway = gateway
        self.strategies: List[PicklistStrategy] = list(
            strategies
            if strategies is not None
            else (
                OrganizationProcessListStrategy(gateway),
                ProjectProcessListStrategy(gateway),
                FieldAllowedValuesStrategy(gateway),
            )
        )

    def resolve_with_source(
        self, project: str, field_reference_name: str, picklist_id: Optional[str] = None
    ) -> Tuple[List[str], Optional[str]]:
        """Resolve values and report which strategy produced them."""
        context = PicklistContext(project, field_reference_name, picklist_id)
        for strategy in self.strategies:
            try:
                values = strategy.try_resolve(context)
            except (AzureDevOpsGatewayError, ValueError) as e:
                logger.warning(
                    f'Strategy "{strategy.name}" failed for {field_reference_name}: {str(e)}'
                )
                continue
            if values:
                logger.info(
                    f'Resolved {len(values)} values for {field_reference_name} '
                    f'using {strategy.name}'
                )
                return values, strategy.name

        logger.warning(f'Could not resolve allowed values for {field_reference_name} in {project}')
        return [], None

    def resolve(
        self, project: str, field_reference_name: str, picklist_id: Optional[str] = None
    ) -> List[str]:
        """Allowed values of a field, or an empty list when every strategy fails."""
        values, _ = self.resolve_with_source(project, field_reference_name, picklist_id)
        return values
