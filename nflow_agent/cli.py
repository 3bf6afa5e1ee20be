"""Command-line entry point for the NFlow agent.

Usage:
    nflow-agent run "Create a CRM application with a contact object"
    nflow-agent run "Add a phone field to contact" --session my-session
    nflow-agent serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from argparse import ArgumentParser
from uuid import uuid4

from dotenv import load_dotenv


async def _run_once(message: str, session_id: str) -> dict:
    from nflow_agent.service import CoordinatorService

    async with CoordinatorService.from_env() as service:
        return await service.run({"message": message, "sessionId": session_id})


def _serve(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("nflow_agent.api:app", host=host, port=port)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    load_dotenv()
    level = os.getenv("NFLOW_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    parser = ArgumentParser(
        prog="nflow-agent",
        description="NFlow agent: manage platform applications and objects in plain language",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    run_p = sub.add_parser("run", help="Process one request and print the JSON result")
    run_p.add_argument("message", help="Natural-language request")
    run_p.add_argument("--session", default=None, metavar="ID", help="Session id to continue (default: new)")

    serve_p = sub.add_parser("serve", help="Start the HTTP API")
    serve_p.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    serve_p.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))

    args = parser.parse_args()

    if args.command == "run":
        session_id = args.session or str(uuid4())
        result = asyncio.run(_run_once(args.message, session_id))
        print(json.dumps(result, indent=2, default=str))
        sys.exit(0 if result.get("success") else 1)
    elif args.command == "serve":
        _serve(args.host, args.port)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
