"""Command line entrypoint for the song worker."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
import contextlib
from dataclasses import asdict
import json
import logging
import signal
from typing import Any

from sqlalchemy.exc import OperationalError
import uvicorn

from songworker.api.app import create_app
from songworker.config import AppConfig, load_config
from songworker.errors import SongworkerError, StateStoreUnavailableError
from songworker.logging import configure_logging, get_logger
from songworker.logging_events import log_event
from songworker.orchestrator.bootstrap import WorkerRuntime, bootstrap_worker
from songworker.orchestrator.status import SessionMode
from songworker.store import NewSession, SqlStateStore

logger = get_logger("songworker")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _open_store(config: AppConfig) -> SqlStateStore:
    return SqlStateStore.from_url(
        config.database.url, stale_after_s=config.orchestrator.stale_timeout_s
    )


async def _serve(runtime: WorkerRuntime, config: AppConfig) -> int:
    try:
        await runtime.recover()
    except StateStoreUnavailableError as exc:
        log_event(
            logger,
            "worker.startup_failed",
            level=logging.CRITICAL,
            error=exc.message,
            exit_code=1,
        )
        return 1

    stop_event = asyncio.Event()
    scheduler_task = asyncio.create_task(runtime.scheduler.run(stop_event))
    try:
        if config.api.enabled:
            server = uvicorn.Server(
                uvicorn.Config(
                    create_app(runtime, start_worker=False),
                    host=config.api.host,
                    port=config.api.port,
                    log_config=None,
                )
            )
            await server.serve()
        else:
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError):
                    loop.add_signal_handler(signum, stop_event.set)
            await scheduler_task
    finally:
        runtime.scheduler.request_stop()
        stop_event.set()
        await asyncio.gather(scheduler_task, return_exceptions=True)
        await runtime.scheduler.stop()
        await runtime.aclose()
    return 0


async def _recover(config: AppConfig) -> int:
    runtime = bootstrap_worker(config, store=_open_store(config))
    try:
        report = await runtime.recover()
    except StateStoreUnavailableError as exc:
        logger.critical("Recovery failed: %s", exc.message)
        return 1
    _print_json(asdict(report))
    return 0


async def _create_session(config: AppConfig, args: argparse.Namespace) -> int:
    store = _open_store(config)
    session = await store.create_session(
        NewSession(
            name=args.name,
            prompt=args.prompt,
            llm_provider=args.provider,
            llm_model=args.model,
            mode=SessionMode(args.mode),
            target_bpm=args.bpm,
            target_key=args.key,
            time_signature=args.time_signature,
            audio_duration=args.duration,
            lyrics_language=args.language,
            inference_steps=args.steps,
        )
    )
    _print_json({"id": session.id, "status": session.status.value, "mode": session.mode.value})
    return 0


async def _interrupt(config: AppConfig, args: argparse.Namespace) -> int:
    store = _open_store(config)
    after = args.after
    if after is None:
        session = await store.get_session(args.session_id)
        after = session.current_order_index if session is not None else None
    song = await store.insert_interrupt(
        args.session_id, args.prompt, after_order_index=after if after is not None else 0.0
    )
    _print_json({"id": song.id, "order_index": song.order_index})
    return 0


async def _retry(config: AppConfig, args: argparse.Namespace) -> int:
    requested = await _open_store(config).request_retry(args.song_id)
    _print_json({"song_id": args.song_id, "requeued": requested})
    return 0 if requested else 1


async def _close(config: AppConfig, args: argparse.Namespace) -> int:
    closing = await _open_store(config).request_close(args.session_id)
    _print_json({"session_id": args.session_id, "closing": closing})
    return 0 if closing else 1


async def _set_setting(config: AppConfig, args: argparse.Namespace) -> int:
    await _open_store(config).set_setting(args.key, args.value)
    _print_json({args.key: args.value})
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="songworker", description="Song generation worker")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Recover in-flight songs and run the tick loop")
    commands.add_parser("recover", help="Only run startup recovery and print the report")

    create = commands.add_parser("create-session", help="Create an active session")
    create.add_argument("--name", required=True)
    create.add_argument("--prompt", required=True)
    create.add_argument("--mode", choices=[mode.value for mode in SessionMode], default="endless")
    create.add_argument("--provider", default="ollama")
    create.add_argument("--model", default="")
    create.add_argument("--bpm", type=int)
    create.add_argument("--key")
    create.add_argument("--time-signature")
    create.add_argument("--duration", type=int)
    create.add_argument("--language")
    create.add_argument("--steps", type=int)

    interrupt = commands.add_parser("interrupt", help="Queue a steering song next in line")
    interrupt.add_argument("session_id")
    interrupt.add_argument("prompt")
    interrupt.add_argument("--after", type=float, help="Order index the song plays after")

    retry = commands.add_parser("retry", help="Send an errored song back through the pipeline")
    retry.add_argument("song_id")

    close = commands.add_parser("close", help="Ask an active session to wind down")
    close.add_argument("session_id")

    setting = commands.add_parser("set-setting", help="Store a worker setting")
    setting.add_argument("key")
    setting.add_argument("value")
    return parser


_COMMANDS = {
    "create-session": _create_session,
    "interrupt": _interrupt,
    "retry": _retry,
    "close": _close,
    "set-setting": _set_setting,
}


def _cli(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config()
    configure_logging(config.logging.level, config.logging.log_file)

    try:
        if args.command == "run":
            runtime = bootstrap_worker(config)
            return asyncio.run(_serve(runtime, config))
        if args.command == "recover":
            return asyncio.run(_recover(config))
        return asyncio.run(_COMMANDS[args.command](config, args))
    except OperationalError as exc:
        logger.critical("State store unavailable: %s", exc.orig or exc)
        return 1
    except SongworkerError as exc:
        _print_json(exc.to_payload())
        return 1
    except ValueError as exc:
        logger.error("%s", exc)
        return 2


def main() -> None:
    raise SystemExit(_cli())


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
