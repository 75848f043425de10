"""Terminal client for the AutoFlow agent.

Usage:
    autoflow-cli generate "every morning at 8 email me the sales sheet"
    autoflow-cli generate "..." --deploy --publish
    autoflow-cli validate flow.json
    autoflow-cli pieces
    autoflow-cli serve --port 8000
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser

from dotenv import load_dotenv

from autoflow_agent.errors import AutoflowError, SafetyBlock, SchemaError


def _services():
    from autoflow_agent.agent.pipeline import create_services
    from autoflow_agent.client import Settings
    from autoflow_agent.reasoning import ReasoningSettings

    return create_services(Settings.from_env(), ReasoningSettings())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _generate(request: str, deploy: bool, publish: bool) -> int:
    services = _services()
    try:
        await services.registry.refresh()
        result = await services.pipeline.generate(request)

        print(json.dumps(result.flow_json, indent=2, ensure_ascii=False))
        if result.explanation:
            print(f"\n{result.explanation}")
        for warning in result.warnings:
            print(f"warning: {warning}")
        if result.connections_needed:
            print(f"connections needed: {', '.join(result.connections_needed)}")

        if deploy:
            deployed = await services.pipeline.deploy(result.flow, auto_publish=publish)
            compiled = deployed.compiled
            print(f"\nFlow {compiled.flow_id} created ({compiled.status}, {compiled.step_count} steps)")
            print(compiled.url)
        return 0
    except SchemaError as e:
        for error in e.errors:
            print(f"error: {error}", file=sys.stderr)
        return 1
    except SafetyBlock as e:
        for block in e.blocks:
            print(f"blocked: {block}", file=sys.stderr)
        return 1
    except AutoflowError as e:
        print(f"{type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        await services.close()


def _validate_file(path: str) -> int:
    """Validator + safety report for a flow JSON file. Exit 1 on blocking findings."""
    from autoflow_agent.agent.safety import guard
    from autoflow_agent.agent.validation import validate
    from autoflow_agent.knowledge.catalog import fallback_catalog

    with open(path, encoding="utf-8") as f:
        raw = json.load(f)

    result = validate(raw, fallback_catalog())
    for error in result.errors:
        print(f"error: {error}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    if not result.ok:
        return 1

    safety = guard(result.flow)
    for block in safety.blocks:
        print(f"blocked: {block}")
    for warning in safety.warnings:
        print(f"warning: {warning}")
    if not safety.safe:
        return 1

    print(f"OK: {result.flow.display_name!r} ({len(result.flow.actions)} top-level actions)")
    return 0


async def _pieces() -> int:
    services = _services()
    try:
        catalog = await services.registry.refresh()
        print(json.dumps(catalog.stats(), indent=2))
        return 0
    finally:
        await services.close()


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    parser = ArgumentParser(
        prog="autoflow-cli",
        description="AutoFlow agent — natural language to Activepieces flows",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    gen_p = sub.add_parser("generate", help="Generate a flow from a natural-language request")
    gen_p.add_argument("request", help="What the automation should do")
    gen_p.add_argument("--deploy", action="store_true", help="Create the flow on Activepieces")
    gen_p.add_argument("--publish", action="store_true", help="Publish after deploying")

    val_p = sub.add_parser("validate", help="Validate a flow JSON file")
    val_p.add_argument("file", help="Path to a flow JSON file")

    sub.add_parser("pieces", help="Sync the piece catalog and print its stats")

    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()
    load_dotenv()
    if args.command != "serve":
        logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    if args.command == "generate":
        sys.exit(asyncio.run(_generate(args.request, args.deploy, args.publish)))
    elif args.command == "validate":
        sys.exit(_validate_file(args.file))
    elif args.command == "pieces":
        sys.exit(asyncio.run(_pieces()))
    elif args.command == "serve":
        from autoflow_agent.api import serve
        serve(host=args.host, port=args.port)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
