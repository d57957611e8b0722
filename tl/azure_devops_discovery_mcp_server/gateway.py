"""Remote API gateway for the Azure DevOps work tracking REST API.

Every call is a single blocking request with a fixed timeout. There is no retry:
callers treat a failure as a failed strategy (picklist resolution) or a skipped
item (hierarchy sampling).
"""

import base64
import logfire
import os
import requests
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ValidationError
from tl.azure_devops_discovery_mcp_server.dtos import (
    ClassificationNodeDTO,
    FieldDTO,
    IterationDTO,
    ProjectDTO,
    TeamDTO,
    TeamFieldValuesDTO,
    ValueListDTO,
    WiqlResultDTO,
    WorkItemDTO,
    WorkItemTypeDTO,
)
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar
from urllib.parse import quote


DEFAULT_API_VERSION = '7.1'
DEFAULT_TIMEOUT = 30

T = TypeVar('T', bound=BaseModel)


class AzureDevOpsGatewayError(Exception):
    """Transport, HTTP status or payload error raised by the gateway."""

    def __init__(
        self, message: str, endpoint: Optional[str] = None, status_code: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


def _segment(value: str) -> str:
    return quote(str(value), safe='')


class AzureDevOpsGateway:
    """Authenticated, typed access to the Azure DevOps REST endpoints used by discovery."""

    BATCH_SIZE = 200

    def __init__(
        self,
        organization_url: Optional[str] = None,
        personal_access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            organization_url: Organization URL, defaults to ``AZURE_DEVOPS_ORG_URL``
            personal_access_token: PAT, defaults to ``AZURE_DEVOPS_PAT``
            api_version: REST api-version, defaults to ``AZURE_DEVOPS_API_VERSION`` or 7.1
            timeout: Per-call timeout in seconds, defaults to ``AZURE_DEVOPS_TIMEOUT`` or 30
        """
        load_dotenv()

        self.organization_url: str = (
            organization_url
            if organization_url is not None
            else os.environ.get('AZURE_DEVOPS_ORG_URL', '')
        )
        personal_access_token = (
            personal_access_token
            if personal_access_token is not None
            else os.environ.get('AZURE_DEVOPS_PAT', '')
        )

        if not all([self.organization_url.strip(), personal_access_token.strip()]):
            error_message = (
                'Missing required environment variables: AZURE_DEVOPS_ORG_URL and AZURE_DEVOPS_PAT'
            )
            logger.error(error_message)
            logfire.error('Failed to initialize Azure DevOps gateway', error=error_message)
            raise ValueError(error_message)

        if not self.organization_url.endswith('/'):
            self.organization_url += '/'

        self.api_version: str = api_version or os.environ.get(
            'AZURE_DEVOPS_API_VERSION', DEFAULT_API_VERSION
        )
        self.timeout: int = int(timeout or os.environ.get('AZURE_DEVOPS_TIMEOUT', DEFAULT_TIMEOUT))

        credentials = base64.b64encode(f':{personal_access_token}'.encode()).decode()
        self.headers = {
            'Authorization': f'Basic {credentials}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

        logger.info(f'Initialized Azure DevOps gateway for organization: {self.organization_url}')
        logfire.info(
            'Azure DevOps gateway initialized',
            organization_url=self.organization_url,
            api_version=self.api_version,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith('http://') or path.startswith('https://'):
            return path
        return f'{self.organization_url}{path.lstrip("/")}'

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
    ) -> requests.Response:
        url = self._url(path)
        query = {'api-version': self.api_version}
        if params:
            query.update(params)

        try:
            response = requests.request(
                method,
                url,
                headers=self.headers,
                params=query,
                json=json_body,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            raise AzureDevOpsGatewayError(
                f'HTTP {status_code} from {path}: {str(e)}', endpoint=path, status_code=status_code
            ) from e
        except requests.exceptions.RequestException as e:
            raise AzureDevOpsGatewayError(
                f'Request to {path} failed: {str(e)}', endpoint=path
            ) from e

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Generic passthrough GET returning the raw response body."""
        return self._request('GET', path, params=params).text

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Generic GET returning the decoded JSON body."""
        response = self._request('GET', path, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise AzureDevOpsGatewayError(
                f'Malformed JSON from {path}: {str(e)}', endpoint=path
            ) from e

    def post_json(
        self, path: str, body: Any, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        response = self._request('POST', path, params=params, json_body=body)
        try:
            return response.json()
        except ValueError as e:
            raise AzureDevOpsGatewayError(
                f'Malformed JSON from {path}: {str(e)}', endpoint=path
            ) from e

    @staticmethod
    def _parse(model: Type[T], data: Any, path: str) -> T:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise AzureDevOpsGatewayError(
                f'Unexpected payload shape from {path}: {str(e)}', endpoint=path
            ) from e

    def _get_list(
        self, model: Type[T], path: str, params: Optional[Dict[str, Any]] = None
    ) -> List[T]:
        envelope = self._parse(ValueListDTO, self.get_json(path, params), path)
        return [self._parse(model, item, path) for item in envelope.value]

    # ------------------------------------------------------------------
    # Core / teams
    # ------------------------------------------------------------------

    def list_projects(self) -> List[ProjectDTO]:
        """List all projects of the organization."""
        return self._get_list(ProjectDTO, '_apis/projects', {'$top': 500})

    def list_teams(self, project: str) -> List[TeamDTO]:
        """List teams of a project."""
        return self._get_list(
            TeamDTO, f'_apis/projects/{_segment(project)}/teams', {'$top': 500}
        )

    def list_iterations(
        self, project: str, team: str, timeframe: Optional[str] = None
    ) -> List[IterationDTO]:
        """List iterations assigned to a team, optionally filtered by timeframe."""
        params = {'$timeframe': timeframe} if timeframe else None
        path = f'{_segment(project)}/{_segment(team)}/_apis/work/teamsettings/iterations'
        return self._get_list(IterationDTO, path, params)

    def get_team_field_values(self, project: str, team: str) -> TeamFieldValuesDTO:
        """Area paths owned by a team."""
        path = f'{_segment(project)}/{_segment(team)}/_apis/work/teamsettings/teamfieldvalues'
        return self._parse(TeamFieldValuesDTO, self.get_json(path), path)

    def get_area_tree(self, project: str, depth: int = 2) -> ClassificationNodeDTO:
        """Area classification tree of a project."""
        path = f'{_segment(project)}/_apis/wit/classificationnodes/areas'
        return self._parse(ClassificationNodeDTO, self.get_json(path, {'$depth': depth}), path)

    # ------------------------------------------------------------------
    # Work item tracking
    # ------------------------------------------------------------------

    def get_work_item_types(self, project: str) -> List[WorkItemTypeDTO]:
        """List work item types of a project."""
        return self._get_list(WorkItemTypeDTO, f'{_segment(project)}/_apis/wit/workitemtypes')

    def get_work_item_type_fields(self, project: str, work_item_type: str) -> List[FieldDTO]:
        """Fields of one work item type, with allowed values expanded."""
        path = (
            f'{_segment(project)}/_apis/wit/workitemtypes/{_segment(work_item_type)}/fields'
        )
        return self._get_list(FieldDTO, path, {'$expand': 'allowedValues'})

    def get_fields(self, project: str) -> List[FieldDTO]:
        """Project field catalogue."""
        return self._get_list(FieldDTO, f'{_segment(project)}/_apis/wit/fields')

    def get_field(self, project: str, field_reference_name: str) -> FieldDTO:
        path = f'{_segment(project)}/_apis/wit/fields/{_segment(field_reference_name)}'
        return self._parse(FieldDTO, self.get_json(path), path)

    def get_field_allowed_values(self, project: str, field_reference_name: str) -> List[str]:
        """Allowed values exposed by the field-specific endpoint."""
        path = (
            f'{_segment(project)}/_apis/wit/fields/{_segment(field_reference_name)}/allowedValues'
        )
        envelope = self._parse(ValueListDTO, self.get_json(path), path)
        return [str(value) for value in envelope.value if value is not None]

    def get_work_item(self, work_item_id: int, expand: str = 'Relations') -> WorkItemDTO:
        """Get a single work item by id."""
        path = f'_apis/wit/workitems/{int(work_item_id)}'
        params = {'$expand': expand} if expand else None
        return self._parse(WorkItemDTO, self.get_json(path, params), path)

    def get_work_items(
        self, ids: Sequence[int], fields: Optional[Sequence[str]] = None
    ) -> List[WorkItemDTO]:
        """Get work items through the batch API, at most BATCH_SIZE per request."""
        items: List[WorkItemDTO] = []
        path = '_apis/wit/workitemsbatch'
        for start in range(0, len(ids), self.BATCH_SIZE):
            body: Dict[str, Any] = {
                'ids': [int(i) for i in ids[start : start + self.BATCH_SIZE]],
                'errorPolicy': 'Omit',
            }
            if fields:
                body['fields'] = list(fields)
            envelope = self._parse(ValueListDTO, self.post_json(path, body), path)
            # errorPolicy=Omit returns null entries for ids that could not be read
            items.extend(
                self._parse(WorkItemDTO, item, path) for item in envelope.value if item
            )
        return items

    def execute_query(self, project: str, query: str, top: Optional[int] = None) -> List[int]:
        """Run a WIQL query and return the ordered list of work item ids."""
        path = f'{_segment(project)}/_apis/wit/wiql'
        params = {'$top': top} if top else None
        result = self._parse(
            WiqlResultDTO, self.post_json(path, {'query': query}, params), path
        )
        return result.ids
