"""Azure DevOps Discovery MCP Server.

This module provides the main server implementation for the Azure DevOps discovery MCP
server, which investigates the process configuration of an organization (work item types,
custom fields, picklists, hierarchy and teams) and persists it as YAML documents.
"""

import logfire
import os
from dotenv import load_dotenv
from loguru import logger
from mcp.server.fastmcp import FastMCP
from pathlib import Path
from tl.azure_devops_discovery_mcp_server.ado_tools import AzureDevOpsDiscoveryTools


def load_config() -> None:
    """Load configuration from .env file.

    Looks for .env file in the current directory and parent directories.
    """
    # Start with the current directory and move up to find .env
    current_dir = Path(os.path.dirname(os.path.abspath(__file__)))

    # Look for .env in current directory and up to 3 levels up
    for _ in range(4):
        env_file = current_dir / '.env'
        if env_file.exists():
            logger.info(f'Loading configuration from {env_file}')
            load_dotenv(dotenv_path=env_file)
            break
        current_dir = current_dir.parent
    else:
        logger.warning('No .env file found. Using environment variables if available.')


# Server constants for Azure DevOps Discovery MCP Server
SERVER_INSTRUCTIONS = """
You are an Azure DevOps process configuration expert helping users to:

1. Discover the enabled work item types of a project
2. Find custom fields and resolve the allowed values of picklist fields
3. Infer which work item types are used as children of which parents
4. Understand how teams, areas and iterations use their work items
5. Keep the discovered configuration documents up to date and backed up

Run investigate_configuration with full-configuration the first time a project is
explored; later runs can target workitem-types, custom-fields or picklist-values.
Request a backup before investigations that may overwrite hand-edited documents.
Use get_field_allowed_values before creating or updating work items so that picklist
fields only receive values the organization accepts.
"""

SERVER_DEPENDENCIES: list[str] = [
    'requests',
    'python-dotenv',
    'loguru',
    'logfire',
    'PyYAML',
    'pydantic',
]

# Initialize MCP server
mcp: FastMCP = FastMCP(
    'tl.azure-devops-discovery-mcp-server',
    instructions=SERVER_INSTRUCTIONS,
    dependencies=SERVER_DEPENDENCIES,
)


def setup_logging() -> None:
    """Set up logging configuration."""
    # Get the Logfire write token
    logfire_write_token: str = os.environ.get('LOGFIRE_WRITE_TOKEN', '')
    if not logfire_write_token:
        logger.warning('LOGFIRE_WRITE_TOKEN not found in environment variables.')
    else:
        logger.info('LOGFIRE_WRITE_TOKEN successfully loaded.')

    logfire.configure(token=logfire_write_token)
    logger.configure(handlers=[logfire.loguru_handler()])


def register_tools() -> None:
    """Register Azure DevOps discovery tools with the MCP server."""
    global mcp
    AzureDevOpsDiscoveryTools(mcp)


def main() -> None:
    """Main entry point to start the MCP server."""
    global mcp

    # Load configuration before starting the server
    load_config()

    # Configure logging
    setup_logging()

    # Register tools
    register_tools()

    logger.info('Created MCP server with Azure DevOps discovery functions')
    mcp.run(transport='streamable-http')


if __name__ == '__main__':
    main()
