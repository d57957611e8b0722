from typing import Any, Dict, List, Optional


class ADOInvestigationResponse(Dict[str, Any]):
    """Response model for a configuration investigation."""

    def __init__(
        self,
        status: str,
        message: str,
        report: str,
        result: Dict[str, Any],
    ):
        """Initialize Azure DevOps investigation response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            report: Human readable investigation report
            result: Structured investigation result, including the merged document when
                requested
        """
        super().__init__(
            {'status': status, 'message': message, 'report': report, 'result': result}
        )
        self.status = status
        self.message = message
        self.report = report
        self.result = result


class ADOWorkItemTypesResponse(Dict[str, Any]):
    """Response model for listing the work item types of a project."""

    def __init__(
        self,
        status: str,
        message: str,
        listing: str,
        work_item_types: List[Dict[str, Any]],
        count: int,
    ):
        """Initialize Azure DevOps work item types response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            listing: Formatted listing of the types
            work_item_types: List of work item type information
            count: Number of work item types returned
        """
        super().__init__(
            {
                'status': status,
                'message': message,
                'listing': listing,
                'work_item_types': work_item_types,
                'count': count,
            }
        )
        self.status = status
        self.message = message
        self.listing = listing
        self.work_item_types = work_item_types
        self.count = count


class ADOPicklistValuesResponse(Dict[str, Any]):
    """Response model for resolving the allowed values of a picklist field."""

    def __init__(
        self,
        status: str,
        message: str,
        field: str,
        values: List[str],
        source: Optional[str],
    ):
        """Initialize Azure DevOps picklist values response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            field: Reference name of the field
            values: Allowed values, empty when none could be resolved
            source: Name of the resolution strategy or lookup that produced the values
        """
        super().__init__(
            {
                'status': status,
                'message': message,
                'field': field,
                'values': values,
                'count': len(values),
                'source': source,
            }
        )
        self.status = status
        self.message = message
        self.field = field
        self.values = values
        self.source = source


class ADOHierarchyResponse(Dict[str, Any]):
    """Response model for parent/child hierarchy analysis."""

    def __init__(self, status: str, message: str, analysis: Dict[str, Any], report: str):
        """Initialize Azure DevOps hierarchy response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            analysis: Structured hierarchy analysis
            report: Markdown documentation of the detected patterns
        """
        super().__init__(
            {'status': status, 'message': message, 'analysis': analysis, 'report': report}
        )
        self.status = status
        self.message = message
        self.analysis = analysis
        self.report = report


class ADOTeamContextResponse(Dict[str, Any]):
    """Response model for team and area context analysis."""

    def __init__(self, status: str, message: str, analysis_type: str, report: str):
        """Initialize Azure DevOps team context response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            analysis_type: The analysis that was run
            report: Text report of the analysis
        """
        super().__init__(
            {
                'status': status,
                'message': message,
                'analysis_type': analysis_type,
                'report': report,
            }
        )
        self.status = status
        self.message = message
        self.analysis_type = analysis_type
        self.report = report


class ADOBackupResponse(Dict[str, Any]):
    """Response model for backing up configuration files."""

    def __init__(self, status: str, message: str, backups: List[Dict[str, Any]], report: str):
        """Initialize Azure DevOps configuration backup response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            backups: One record per configuration file
            report: Text report of the backup
        """
        super().__init__(
            {'status': status, 'message': message, 'backups': backups, 'report': report}
        )
        self.status = status
        self.message = message
        self.backups = backups
        self.report = report


class ADOListBackupsResponse(Dict[str, Any]):
    """Response model for listing configuration backups."""

    def __init__(
        self, status: str, message: str, backups: Dict[str, List[str]], count: int
    ):
        """Initialize Azure DevOps list backups response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            backups: Backup file names per configuration file, most recent first
            count: Total number of backups
        """
        super().__init__(
            {'status': status, 'message': message, 'backups': backups, 'count': count}
        )
        self.status = status
        self.message = message
        self.backups = backups
        self.count = count


class ADORestoreResponse(Dict[str, Any]):
    """Response model for restoring configuration files from their latest backup."""

    def __init__(self, status: str, message: str, restored: List[Dict[str, Any]]):
        """Initialize Azure DevOps restore response.

        Args:
            status: Status of the operation (success/error)
            message: Message describing the result
            restored: One restore result per configuration file
        """
        super().__init__({'status': status, 'message': message, 'restored': restored})
        self.status = status
        self.message = message
        self.restored = restored
