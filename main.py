"""
main.py — Sentinel Guardian application entry point.

Parses CLI args, loads configuration, wires the analysis orchestrator with
its device-backed collaborators, and runs one of three front ends: the
FastAPI web server, a single headless query, or an interactive console.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import traceback

# ──────────────────────────────────────────────────────────────
# ASCII banner
# ──────────────────────────────────────────────────────────────

_BANNER = r"""
  ____             _   _            _
 / ___|  ___ _ __ | |_(_)_ __   ___| |
 \___ \ / _ \ '_ \| __| | '_ \ / _ \ |
  ___) |  __/ | | | |_| | | | |  __/ |
 |____/ \___|_| |_|\__|_|_| |_|\___|_|
            Guardian  v1.0
     Personal Safety Analysis Client
"""

_CONSOLE_HELP = (
    "Type a question, or one of: /yes  /no  /sos  /reset  /state  /quit"
)


# ──────────────────────────────────────────────────────────────
# Argument parsing
# ──────────────────────────────────────────────────────────────

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="guardian",
        description="Sentinel Guardian — AI-assisted personal safety analysis",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument(
        "--config",
        default=None,
        help="Path to a guardian.yaml file (default: GUARDIAN_CONFIG or config/guardian.yaml)",
    )
    p.add_argument(
        "--web",
        action="store_true",
        help="Start the FastAPI server instead of the console",
    )
    p.add_argument(
        "--query",
        default=None,
        metavar="TEXT",
        help="Run one headless analysis for TEXT, print the transcript and exit",
    )
    p.add_argument(
        "--host",
        default=None,
        help="Bind address for --web (default from config)",
    )
    p.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for --web (default from config)",
    )
    p.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARN", "ERROR"],
        default=None,
        help="Minimum log level for stderr output (default from config)",
    )
    p.add_argument(
        "--no-voice",
        action="store_true",
        help="Send speech to the log only",
    )
    p.add_argument(
        "--no-camera",
        action="store_true",
        help="Do not capture camera frames",
    )
    return p


# ──────────────────────────────────────────────────────────────
# Front ends
# ──────────────────────────────────────────────────────────────

def _print_transcript(controller) -> None:
    for entry in controller.transcript:
        print(f"[{entry.kind.value:<9}] {entry.message}")
    print(f"[STATE    ] {controller.state.value}")


def _run_query(controller, text: str) -> int:
    """Run one analysis and print the transcript. Returns exit code."""
    asyncio.run(controller.submit_query(text))
    _print_transcript(controller)
    return 0


async def _console_loop(controller) -> None:
    from pipeline.controller import ON_CONFIRMATION_NEEDED, ON_LOG

    controller.subscribe(ON_LOG, lambda d: print(f"[{d['type']:<9}] {d['message']}"))
    controller.subscribe(
        ON_CONFIRMATION_NEEDED,
        lambda d: print(f"[PROMPT   ] {d['message']} (/yes or /no)"),
    )
    print(_CONSOLE_HELP)

    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        if line == "/quit":
            break
        if line == "/yes":
            await controller.confirm_emergency(True)
        elif line == "/no":
            await controller.confirm_emergency(False)
        elif line == "/sos":
            await controller.trigger_emergency(source="console")
        elif line == "/reset":
            controller.reset()
            print(f"[STATE    ] {controller.state.value}")
        elif line == "/state":
            print(f"[STATE    ] {controller.state.value}")
        else:
            await controller.handle_transcript(line)


def _run_console(controller) -> int:
    """Interactive console on stdin. Returns exit code."""
    try:
        asyncio.run(_console_loop(controller))
    except KeyboardInterrupt:
        pass
    return 0


def _run_web(controller, host: str, port: int) -> int:
    """Run the FastAPI server in the main thread until interrupted."""
    from ui.web_app import start_web_server

    print(f"[INFO] Web API → http://{host}:{port}/health")
    print("       Press Ctrl-C to stop.")
    try:
        start_web_server(controller, host=host, port=port)
    except KeyboardInterrupt:
        pass
    return 0


# ──────────────────────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> int:
    """Application entry point. Returns process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.query is None:
        print(_BANNER)

    # 1. Configuration (before the logger so log_dir applies)
    from core.config import load_config
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    # 2. Logger (GUARDIAN_LOG_DIR still wins over the config file)
    from core.logger import configure_logger
    log = configure_logger(
        os.environ.get("GUARDIAN_LOG_DIR", config.logging.log_dir),
        stderr_level=args.log_level or config.logging.level,
    )
    log.info("main", "args_parsed", {
        "web": args.web,
        "query": args.query is not None,
        "no_voice": args.no_voice,
        "no_camera": args.no_camera,
        "config": args.config,
    })
    if not config.gateway.api_key:
        print(
            f"[WARN] {config.gateway.api_key_env} is not set — remote analysis will fail",
            file=sys.stderr,
        )

    # 3. Controller
    from pipeline.controller import GuardianController
    controller = GuardianController.from_config(
        config,
        voice=not args.no_voice,
        camera=not args.no_camera,
    )
    log.info("main", "controller_ready", {"state": controller.state.value})

    # 4. Launch
    exit_code = 0
    try:
        if args.web:
            exit_code = _run_web(
                controller,
                host=args.host or config.server.host,
                port=args.port or config.server.port,
            )
        elif args.query is not None:
            exit_code = _run_query(controller, args.query)
        else:
            exit_code = _run_console(controller)
    except Exception:                              # noqa: BLE001
        tb = traceback.format_exc()
        print(tb, file=sys.stderr)
        log.critical("main", "unhandled_exception", {"traceback": tb})
        exit_code = 1
    finally:
        controller.shutdown()

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
