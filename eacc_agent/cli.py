"""Operator CLI for the EACC worker agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from .capabilities import select_capability
from .config import AgentSettings, load_settings
from .errors import AgentError, ConfigurationError, IdentityMismatchError
from .lifecycle import matches_keywords
from .logging_utils import configure_logging
from .runtime import EXIT_CONFIGURATION, EXIT_FAILURE, EXIT_OK, AgentRuntime, seed_simulation


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _build_runtime(args: argparse.Namespace, settings: AgentSettings) -> AgentRuntime:
    return AgentRuntime.build(settings, simulate=args.simulate)


async def _run(args: argparse.Namespace, runtime: AgentRuntime) -> int:
    if runtime.simulate:
        for _ in range(args.seed_jobs):
            await seed_simulation(runtime)
    if args.once:
        discovered, followed = await runtime.run_once()
        _print_json(
            {
                "discovery": {str(k): v.value for k, v in discovered.outcomes.items()},
                "discoveryErrors": discovered.errors,
                "active": {str(k): v.value for k, v in followed.outcomes.items()},
                "activeErrors": followed.errors,
                "state": runtime.manager.snapshot(),
            }
        )
        return EXIT_OK
    return await runtime.run(max_runtime=args.max_runtime)


async def _check_registration(args: argparse.Namespace, runtime: AgentRuntime) -> int:
    status = await runtime.registration_status()
    _print_json(status.summary())
    if not status.registered:
        print("Not registered; run `eacc-agent register`.", file=sys.stderr)
        return EXIT_FAILURE
    if not status.matches:
        print("Published key does not match the derived key; run `eacc-agent register --force`.", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


async def _register(args: argparse.Namespace, runtime: AgentRuntime) -> int:
    status = await runtime.registration_status()
    if status.matches and not args.force:
        print(f"{status.address} is already registered with the derived key.")
        return EXIT_OK
    identity = await runtime.register()
    _print_json({"address": identity.address, "publicKey": identity.public_key_hex})
    return EXIT_OK


async def _inspect_job(args: argparse.Namespace, runtime: AgentRuntime) -> int:
    job = await runtime.directory.get_job(args.job_id)
    payload = {"job": job.summary(), "eventCount": await runtime.directory.event_count(job.id)}
    if args.content:
        content = await runtime.manager.fetch_content(job)
        capability = select_capability(runtime.manager.capabilities, job, content)
        payload["content"] = content
        payload["relevance"] = {
            "open": job.is_open,
            "keywordMatch": matches_keywords(job, content, runtime.manager.keywords),
            "capability": capability.name if capability else None,
        }
    _print_json(payload)
    return EXIT_OK


async def _fetch(args: argparse.Namespace, runtime: AgentRuntime) -> int:
    session_key: Optional[bytes] = None
    if args.counterparty:
        if args.conversation is None:
            raise ConfigurationError("--conversation (the job id) is required with --counterparty")
        counterparty_key = await runtime.directory.public_key_of(args.counterparty)
        session_key = runtime.store.session_key(runtime.signer, counterparty_key, args.conversation)
    if args.raw:
        data = await runtime.store.fetch_raw(args.locator)
        sys.stdout.buffer.write(data)
        return EXIT_OK
    text = await runtime.store.retrieve_text(args.locator, session_key)
    print(text)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eacc-agent", description="Autonomous worker agent for the EACC marketplace.")
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file; environment variables override it.")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    parser.add_argument("--log-file", default=None, help="Write JSON lines logs to this file.")
    parser.add_argument(
        "--simulate", action="store_true", help="Use the in-memory ledger and content store instead of live services."
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Start polling for jobs")
    run.add_argument("--once", action="store_true", help="Run a single discovery and active-jobs pass, then exit.")
    run.add_argument("--max-runtime", type=float, default=None, help="Stop after this many seconds.")
    run.add_argument("--seed-jobs", type=int, default=1, help="Jobs to post in simulated mode.")
    run.add_argument("--simulate", action="store_true", default=argparse.SUPPRESS, help="Same as the global flag.")
    run.set_defaults(handler=_run)

    check = subparsers.add_parser("check-registration", help="Compare the published key with the derived key")
    check.set_defaults(handler=_check_registration)

    register = subparsers.add_parser("register", help="Register (or re-register) the agent identity")
    register.add_argument("--force", action="store_true", help="Register even if the published key already matches.")
    register.set_defaults(handler=_register)

    inspect = subparsers.add_parser("inspect-job", help="Decode and print a job")
    inspect.add_argument("job_id", type=int)
    inspect.add_argument("--content", action="store_true", help="Also fetch the content and evaluate relevance.")
    inspect.set_defaults(handler=_inspect_job)

    fetch = subparsers.add_parser("fetch", help="Retrieve content by locator or 32-byte digest")
    fetch.add_argument("locator", help="CID or 0x-prefixed digest")
    fetch.add_argument("--counterparty", default=None, help="Address whose published key to decrypt with.")
    fetch.add_argument("--conversation", type=int, default=None, help="Conversation (job) id for decryption.")
    fetch.add_argument("--raw", action="store_true", help="Write the stored bytes without decoding.")
    fetch.set_defaults(handler=_fetch)

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        for problem in exc.problems:
            print(f"  - {problem}", file=sys.stderr)
        return EXIT_CONFIGURATION
    configure_logging(args.log_file or settings.logging.file, level=args.log_level or settings.logging.level)

    try:
        runtime = _build_runtime(args, settings)
        return asyncio.run(args.handler(args, runtime))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        for problem in exc.problems:
            print(f"  - {problem}", file=sys.stderr)
        return EXIT_CONFIGURATION
    except IdentityMismatchError as exc:
        print(f"Identity error: {exc}", file=sys.stderr)
        print("Run `eacc-agent register --force` to publish the derived key.", file=sys.stderr)
        return EXIT_FAILURE
    except AgentError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main(sys.argv[1:]))
