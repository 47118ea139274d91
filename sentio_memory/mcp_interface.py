"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
import asyncio
import sys
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .services.factory import create_memory_repository
from .services.memory_management import MemoryManagementService
from .utils.config import AppConfig, load_config
from .utils.errors import SentioMemoryError
from .utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

SERVER_NAME = 'Sentio Memory'


class MemoryTools:
    """MCP tool handlers bound to one memory service."""

    def __init__(self, service: MemoryManagementService):
        self.service = service

    async def search_memories(self,
                              user_id: str,
                              query: str,
                              top_k: int = 10,
                              memory_types: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Search a user's memories by keywords.

        Args:
            user_id: User ID, usually an email address
            query: Keywords that must all appear in a memory
            top_k: Maximum number of results to return (default: 10)
            memory_types: Restrict to episodic, semantic, procedural, strategic or action_state

        Returns:
            Matching memories, most important first
        """
        if not user_id or not user_id.strip():
            raise ToolError('User ID is required')

        if not query or not query.strip():
            return []

        try:
            fragments = await self.service.search(user_id, query, memory_types, top_k)
        except (SentioMemoryError, ValueError) as e:
            logger.error(f'Memory search failed in MCP tool: {e}')
            raise ToolError(f'Memory search failed: {e}') from e

        logger.debug(f'MCP search returned {len(fragments)} memories for user {user_id}')
        return [fragment.to_dict() for fragment in fragments]

    async def get_recent_interactions(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Return the user's latest interactions, newest first."""
        try:
            interactions = await self.service.repository.get_recent_interactions(user_id, limit)
        except SentioMemoryError as e:
            logger.error(f'Fetching recent interactions failed in MCP tool: {e}')
            raise ToolError(f'Fetching recent interactions failed: {e}') from e
        return [interaction.to_dict() for interaction in interactions]

    async def get_user_statistics(self, user_id: str) -> Dict[str, Any]:
        """Return interaction and memory counts for a user."""
        try:
            stats = await self.service.repository.get_user_statistics(user_id)
        except SentioMemoryError as e:
            logger.error(f'Computing statistics failed in MCP tool: {e}')
            raise ToolError(f'Computing statistics failed: {e}') from e
        return stats.to_dict()

    async def remember(self,
                       user_id: str,
                       content: str,
                       memory_type: str = 'semantic',
                       keywords: Optional[List[str]] = None,
                       importance_score: float = 0.5) -> Dict[str, Any]:
        """Store a new memory for a user.

        Args:
            user_id: User ID
            content: The fact or observation to remember
            memory_type: episodic, semantic, procedural, strategic or action_state
            keywords: Optional tags
            importance_score: 0.0 to 1.0

        Returns:
            The stored memory
        """
        try:
            fragment = await self.service.remember(user_id, memory_type, content, keywords, importance_score)
        except (SentioMemoryError, ValueError) as e:
            logger.error(f'Storing memory failed in MCP tool: {e}')
            raise ToolError(f'Storing memory failed: {e}') from e
        return fragment.to_dict()

    async def delete_user_data(self, user_id: str) -> Dict[str, Any]:
        """Irreversibly delete everything stored about a user."""
        try:
            await self.service.repository.delete_user_data(user_id)
        except SentioMemoryError as e:
            logger.error(f'Deleting user data failed in MCP tool: {e}')
            raise ToolError(f'Deleting user data failed: {e}') from e
        return {'user_id': user_id, 'deleted': True}


def create_mcp_server(service: MemoryManagementService) -> FastMCP:
    """Create the FastMCP application with every memory tool registered."""
    mcp = FastMCP(SERVER_NAME)
    tools = MemoryTools(service)

    for handler in (tools.search_memories, tools.get_recent_interactions, tools.get_user_statistics,
                    tools.remember, tools.delete_user_data):
        mcp.tool()(handler)

    logger.info(f'Registered memory tools on MCP server {SERVER_NAME}')
    return mcp


async def serve(config: AppConfig) -> None:
    repository = await create_memory_repository(config.storage)
    try:
        mcp = create_mcp_server(MemoryManagementService(repository))
        if config.mcp.transport == 'stdio':
            await mcp.run_async(transport='stdio')
        else:
            await mcp.run_async(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
    finally:
        await repository.close()


def main() -> None:
    config = load_config()
    # stdout carries the protocol on the stdio transport
    setup_logging(config, sys.stderr if config.mcp.transport == 'stdio' else None)
    logger.info(f'Starting {SERVER_NAME} MCP server ({config.environment}, {config.storage.backend} backend)')
    asyncio.run(serve(config))


if __name__ == '__main__':
    main()
