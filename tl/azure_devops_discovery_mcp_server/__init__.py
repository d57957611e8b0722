"""Azure DevOps Discovery MCP Server Package.

This package provides Model Context Protocol (MCP) server functionality that discovers the
process configuration of an Azure DevOps organization and keeps it as YAML documents.
"""

__version__ = '0.1.0'
__author__ = 'TechniumLabs'
__description__ = 'Azure DevOps MCP Server for work item process configuration discovery'
