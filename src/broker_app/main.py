"""
Operator CLI for the quota broker.

    quota-broker status
    quota-broker seed --catalog broker_catalog.yaml
    quota-broker seed --provider GOOGLE --model gemini-2.5-flash
    quota-broker exclusions
    quota-broker clear-exclusions [--binding 12]
    quota-broker sweep
    quota-broker serve --host 127.0.0.1 --port 8010
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from quota_broker import BrokerSettings, JsonFileStateStore, QuotaBroker, ReconciliationSweep
from quota_broker.catalog_loader import CatalogLoadError

from .logging_setup import configure_logging

console = Console()

_STATE_STYLES = {
    "healthy": "green",
    "exhausted": "yellow",
    "excluded": "red",
    "disabled": "dim",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quota-broker", description="AI provider key and model quota broker"
    )
    parser.add_argument("--env-file", type=str, default=".env", help="Path to a .env file.")
    parser.add_argument("--state-file", type=str, help="Override BROKER_STATE_FILE.")
    parser.add_argument("--verbose", action="store_true", help="Show DEBUG logs on the console.")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show credential and binding health.")
    sub.add_parser("sweep", help="Run one reconciliation pass.")
    sub.add_parser("exclusions", help="List active exclusions.")

    clear = sub.add_parser("clear-exclusions", help="Remove exclusions immediately.")
    clear.add_argument("--binding", type=int, help="Only clear this binding id.")

    seed = sub.add_parser("seed", help="Load a catalog file or add a model to every key of a provider.")
    seed.add_argument("--catalog", type=str, help="YAML catalog file to apply.")
    seed.add_argument("--provider", type=str, help="Provider whose credentials get the model.")
    seed.add_argument("--model", type=str, help="Model name to add.")
    seed.add_argument("--priority", type=int, default=1, help="Binding priority (1 = highest).")

    serve = sub.add_parser("serve", help="Run the status API with the background sweep.")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind the server to.")
    serve.add_argument("--port", type=int, default=8010, help="Port to run the server on.")

    return parser


def build_broker(args: argparse.Namespace) -> QuotaBroker:
    settings = BrokerSettings.from_env()
    if args.state_file:
        settings.state_file = args.state_file
    store = JsonFileStateStore(settings.state_file)
    return QuotaBroker(store=store, settings=settings, configure_logging=True)


def _print_status(status: dict) -> None:
    table = Table(title=f"Quota broker status ({status['timestamp']})")
    for column in ("Binding", "Provider", "Key", "Tenant", "Model", "Prio", "State", "RPM", "RPD", "TPM"):
        table.add_column(column)

    for credential in status["credentials"]:
        for binding in credential["bindings"]:
            usage = binding["usage"]
            state = binding["state"] if credential["active"] else "disabled"
            table.add_row(
                str(binding["id"]),
                credential["provider"],
                credential["key"],
                credential["tenant_id"] or "central",
                binding["model"],
                f"{credential['priority']}/{binding['priority']}",
                f"[{_STATE_STYLES.get(state, 'white')}]{state}[/]",
                f"{usage['rpm']['used']}/{usage['rpm']['limit']}",
                f"{usage['rpd']['used']}/{usage['rpd']['limit']}",
                f"{usage['tpm']['used']}/{usage['tpm']['limit']}",
            )
    console.print(table)

    summary = status["summary"]
    console.print(
        f"[green]{summary['healthy']} healthy[/], [yellow]{summary['exhausted']} exhausted[/], "
        f"[red]{summary['excluded']} excluded[/], [dim]{summary['disabled']} disabled[/] "
        f"| {summary['inactive_credentials']} inactive credential(s)"
    )


def _print_exclusions(exclusions: List[dict]) -> None:
    if not exclusions:
        console.print("[green]No active exclusions.[/]")
        return
    table = Table(title="Active exclusions")
    for column in ("Binding", "Model", "Reason", "Retry at", "Remaining (s)", "Retries"):
        table.add_column(column)
    for item in exclusions:
        table.add_row(
            str(item["binding_id"]),
            item["model"] or "?",
            item["reason"],
            item["retryAt"],
            str(item["remaining_seconds"]),
            str(item["retryCount"]),
        )
    console.print(table)


async def _run_command(args: argparse.Namespace, broker: QuotaBroker) -> int:
    try:
        if args.command == "status":
            _print_status(await broker.get_status())
        elif args.command == "exclusions":
            _print_exclusions(await broker.list_exclusions())
        elif args.command == "clear-exclusions":
            cleared = await broker.clear_exclusions(args.binding)
            console.print(f"Cleared {cleared} exclusion(s).")
        elif args.command == "sweep":
            report = await ReconciliationSweep(broker).run_once()
            for key, value in report.to_dict().items():
                console.print(f"{key}: {value}")
        elif args.command == "seed":
            if args.catalog:
                counts = await broker.load_catalog_file(args.catalog)
                console.print(
                    f"Added {counts['credentials_added']} credential(s), updated "
                    f"{counts['credentials_updated']}, added {counts['bindings_added']} binding(s), "
                    f"skipped {counts['skipped']}."
                )
            elif args.provider and args.model:
                created = await broker.seed_model(args.provider, args.model, priority=args.priority)
                console.print(f"Added {args.model} to {len(created)} credential(s).")
            else:
                console.print("[red]seed needs --catalog, or --provider with --model.[/]")
                return 2
    except CatalogLoadError as e:
        console.print(f"[red]{e}[/]")
        return 1
    finally:
        await broker.close()
    return 0


def serve(args: argparse.Namespace, broker: QuotaBroker) -> int:
    import uvicorn

    from .status_api import create_app

    app = create_app(broker)
    console.print(f"Starting quota broker status API on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    env_file = Path(args.env_file)
    if env_file.exists():
        load_dotenv(env_file)

    configure_logging(verbose=args.verbose)
    logging.getLogger(__name__).debug(f"Running command '{args.command}'")

    broker = build_broker(args)
    if args.command == "serve":
        return serve(args, broker)
    return asyncio.run(_run_command(args, broker))


if __name__ == "__main__":
    sys.exit(main())
