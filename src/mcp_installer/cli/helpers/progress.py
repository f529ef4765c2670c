"""
Live progress output for long-running CLI commands.
"""

import asyncio
from typing import Any, Awaitable

from mcp_installer.cli.helpers.display import print_event
from mcp_installer.core.events import EventBus


async def run_with_events(bus: EventBus, operation: Awaitable[Any]) -> Any:
    """
    Await an orchestrator operation while printing the events it publishes.

    Args:
        bus: Event bus of the orchestrator running the operation
        operation: Coroutine to await

    Returns:
        The operation's result
    """
    channel = bus.subscribe()

    async def consume() -> None:
        async for event in channel:
            print_event(event)

    consumer = asyncio.create_task(consume())
    try:
        return await operation
    finally:
        # Closing the channel lets the consumer print what is queued and exit
        bus.unsubscribe(channel)
        await consumer
