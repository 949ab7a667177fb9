"""
Command line entry point.

    agentmc-bridge run                 # long-running runtime (heartbeat, recurring, realtime)
    agentmc-bridge heartbeat --dry-run # print the heartbeat body without sending it
    agentmc-bridge operations          # list the AgentMC API operations the runtime calls

Settings come from ``AGENTMC_*`` environment variables; flags override them.
"""

import argparse
import asyncio
import json
import signal
import sys

from pydantic import ValidationError

from .api import OPERATIONS
from .config import ProgramConfig
from .errors import AgentMCError, ConfigurationError
from .log_config import configure_logging, get_logger
from .runtime.program import AgentRuntimeProgram

log = get_logger("cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agentmc-bridge", description="AgentMC agent runtime")
    parser.add_argument("--log-level", help="Log level (default: AGENTMC_LOG_LEVEL or INFO)")

    subcommands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("run", "Run the agent runtime until interrupted"),
        ("heartbeat", "Build and send a single heartbeat"),
    ):
        sub = subcommands.add_parser(name, help=help_text)
        sub.add_argument("--agent-id", type=int, help="Agent id (selects AGENTMC_API_KEY_<ID>)")
        sub.add_argument("--workspace", dest="workspace_dir", help="Agent workspace directory")
        sub.add_argument("--base-url", help="AgentMC API base URL")
        sub.add_argument(
            "--provider",
            dest="runtime_provider",
            choices=("auto", "openclaw", "external"),
            help="Runtime provider",
        )
        if name == "heartbeat":
            sub.add_argument(
                "--dry-run", action="store_true", help="Print the heartbeat body instead of sending it"
            )

    subcommands.add_parser("operations", help="List AgentMC API operations")
    return parser


def load_config(args: argparse.Namespace) -> ProgramConfig:
    return ProgramConfig.from_env(
        agent_id=args.agent_id,
        workspace_dir=args.workspace_dir,
        base_url=args.base_url,
        runtime_provider=args.runtime_provider,
    )


async def run_program(config: ProgramConfig) -> None:
    program = AgentRuntimeProgram(config)

    async def handle_signal(sig: signal.Signals) -> None:
        log.info("cli.signal", signal_name=sig.name)
        await program.stop()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(handle_signal(s)))

    try:
        await program.run()
    finally:
        await program.api.aclose()


async def send_heartbeat(config: ProgramConfig, dry_run: bool) -> None:
    program = AgentRuntimeProgram(config)
    try:
        await program.bootstrap()
        body = await program.build_heartbeat_body()
        if dry_run:
            print(json.dumps(body, indent=2))
            return
        response = await program.send_heartbeat(body)
        print(json.dumps(response, indent=2))
    finally:
        await program.api.aclose()


def list_operations() -> None:
    for operation_id, operation in sorted(OPERATIONS.items()):
        print(f"{operation_id}\t{operation.method}\t{operation.path}")


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "operations":
        list_operations()
        return 0

    try:
        config = load_config(args)
        if args.command == "heartbeat":
            await send_heartbeat(config, args.dry_run)
        else:
            await run_program(config)
    except ValidationError as e:
        fields = ", ".join(".".join(str(part) for part in error["loc"]) for error in e.errors())
        print(f"Invalid configuration: {fields}", file=sys.stderr)
        return 1
    except ConfigurationError as e:
        print(str(e), file=sys.stderr)
        return 1
    except AgentMCError as e:
        log.error("cli.failed", command=args.command, exc=e)
        return 1
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
