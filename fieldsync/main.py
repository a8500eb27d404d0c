from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid

import uvicorn

from fieldsync.api.http_app import build_app
from fieldsync.domain.errors import ConfigurationError
from fieldsync.logging_setup import configure_logging
from fieldsync.repositories.storage_keys import storage_keys_from_env
from fieldsync.roles import SUPPORTED_ROLES, validate_role
from fieldsync.services.bootstrap import RuntimeContainer, build_runtime_container


def _default_port(role: str) -> int:
    if role == "api":
        return 8000
    return 8100


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="fieldsync runtime entrypoint")
    parser.add_argument("--role", required=True, help="Runtime role")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate startup and exit",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run one background-task pass, print the result and exit",
    )
    return parser.parse_args(argv)


def create_runtime_app() -> object:
    role = validate_role(os.getenv("APP_ROLE", "api"))
    run_id = str(uuid.uuid4())
    configure_logging()
    container = build_runtime_container(role)
    return _build_container_app(role_name=role.name, run_id=run_id, container=container)


def _build_container_app(*, role_name: str, run_id: str, container: RuntimeContainer) -> object:
    return build_app(
        role=role_name,
        run_id=run_id,
        api_deps=container.api_deps,
        run_scheduler_loop=container.run_scheduler_loop,
        scheduler_state=container.scheduler_state,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


async def _run_background_once(container: RuntimeContainer) -> str:
    if container.on_startup is not None:
        await container.on_startup()
    try:
        await container.queue.recover_at_launch()
        result = await container.background.execute()
    finally:
        if container.on_shutdown is not None:
            await container.on_shutdown()
    return result.value


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        supported = ", ".join(SUPPORTED_ROLES)
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {supported}\n")
        return 2

    try:
        storage_keys_from_env()
    except ConfigurationError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")

    logger.info(
        "runtime initialized",
        extra={"role": role.name, "service": role.name, "run_id": run_id},
    )

    if args.dry_run_startup:
        logger.info(
            "dry-run startup complete",
            extra={"role": role.name, "service": role.name, "run_id": run_id},
        )
        return 0

    container = build_runtime_container(role)
    if args.run_once:
        outcome = asyncio.run(_run_background_once(container))
        sys.stdout.write(json.dumps({"role": role.name, "run_id": run_id, "result": outcome}) + "\n")
        return 0

    port = args.port if args.port is not None else _default_port(role.name)
    app = _build_container_app(role_name=role.name, run_id=run_id, container=container)
    uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
