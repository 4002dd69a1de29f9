"""Command line entrypoint: ``python -m chatcore serve|apply-schema``."""

from __future__ import annotations

import argparse
import asyncio
import sys

import uvicorn

from chatcore.infra import postgres
from chatcore.infra.schema import apply_schema
from chatcore.obs.logging import configure_logging


async def _apply_schema() -> None:
	try:
		await apply_schema()
	finally:
		await postgres.close_pool()


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(prog="chatcore")
	sub = parser.add_subparsers(dest="command", required=True)
	serve = sub.add_parser("serve", help="run the HTTP and Socket.IO server")
	serve.add_argument("--host", default="0.0.0.0")
	serve.add_argument("--port", type=int, default=8000)
	sub.add_parser("apply-schema", help="create chat tables and indexes")
	args = parser.parse_args(argv)

	configure_logging()
	if args.command == "apply-schema":
		if sys.platform == "win32":
			asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
		asyncio.run(_apply_schema())
		return 0
	uvicorn.run("chatcore.main:socket_app", host=args.host, port=args.port, log_config=None)
	return 0


if __name__ == "__main__":
	sys.exit(main())
