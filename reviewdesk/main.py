"""Main entry point: starts the MCP server or the REST API.

Usage:
    python -m reviewdesk.main                      # MCP server (stdio)
    python -m reviewdesk.main --api                # REST API server
    python -m reviewdesk.main --transport sse      # MCP over SSE instead of stdio
    python -m reviewdesk.main --init-db            # create the schema and exit
    python -m reviewdesk.main --create-admin a@b   # bootstrap an admin account and exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from reviewdesk.config import settings

logger = logging.getLogger("reviewdesk")


def _configure_logging() -> None:
    logging.basicConfig(
        level=settings.server.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main():
    parser = argparse.ArgumentParser(
        description="ReviewDesk: manuscript submission and peer-review tracking",
    )
    parser.add_argument(
        "--api",
        action="store_true",
        help="Start the REST API server (FastAPI + uvicorn)",
    )
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse", "streamable-http"],
        default=settings.server.mcp_transport,
        help=f"MCP transport method (default: {settings.server.mcp_transport})",
    )
    parser.add_argument("--host", default=settings.server.host, help=f"API host (default: {settings.server.host})")
    parser.add_argument(
        "--port",
        type=int,
        default=settings.server.rest_port,
        help=f"API port (default: {settings.server.rest_port})",
    )
    parser.add_argument("--init-db", action="store_true", help="Create the database schema and exit")
    parser.add_argument("--create-admin", metavar="EMAIL", help="Create an admin user and exit")

    args = parser.parse_args()
    _configure_logging()
    settings.ensure_dirs()

    if args.init_db:
        asyncio.run(_init_db())
    elif args.create_admin:
        asyncio.run(_create_admin(args.create_admin))
    elif args.api:
        _start_api(args.host, args.port)
    else:
        _start_mcp(args.transport)


async def _init_db() -> None:
    from reviewdesk.database import get_db

    db = await get_db()
    await db.close()
    logger.info("Schema ready at %s", settings.db_path)


async def _create_admin(email: str) -> None:
    from reviewdesk.database import get_db
    from reviewdesk.models import UserCreate, UserRole
    from reviewdesk.user_service import register_user

    db = await get_db()
    try:
        user = await register_user(db, UserCreate(email=email, role=UserRole.ADMIN))
    finally:
        await db.close()
    print(user.user_id)


def _start_mcp(transport: str = "stdio"):
    from reviewdesk.mcp_server import mcp

    logger.info("Starting ReviewDesk MCP server (transport=%s)", transport)
    mcp.run(transport=transport)


def _start_api(host: str, port: int):
    import uvicorn

    logger.info("Starting ReviewDesk REST API at http://%s:%d (docs at /docs)", host, port)
    uvicorn.run(
        "reviewdesk.api:app",
        host=host,
        port=port,
        log_level=settings.server.log_level,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
