"""Doctor CLI: config validation, example config and ad-hoc dispatch.

Commands:
    prompt-dispatch doctor --config <path> [--provider <name>]
    prompt-dispatch template
    prompt-dispatch send --config <path> [--provider <name>] [--model <m>] PROMPT...
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path


def check_config(
    config_path: str,
    provider: str | None = None,
) -> tuple[list[str], list[str]]:
    """Validate a config file and its environment.

    Returns:
        (errors, warnings). Errors are blocking; warnings are informational.
    """
    from prompt_dispatch.config import ConfigError, load_config
    from prompt_dispatch.providers import registry
    from prompt_dispatch.providers.mock import MockProvider

    errors: list[str] = []
    warnings: list[str] = []

    # 1. Parse and structurally validate the YAML
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        return [f"Config invalid: {exc}"], []
    except Exception as exc:
        return [f"Unexpected error loading config: {exc}"], []

    # 2. Per-provider adapter + credential checks
    for pname, pcfg in config.providers.items():
        try:
            provider_cls = registry.get(pcfg.type)
        except KeyError:
            warnings.append(
                f"Provider {pname!r}: unknown type {pcfg.type!r}, its requests will fail with a configuration error"
            )
            continue

        if provider_cls is MockProvider:
            continue  # mock provider always available

        if not pcfg.base_url:
            errors.append(f"Provider {pname!r}: 'base_url' not set")
        if getattr(provider_cls, "requires_api_key", False) and not pcfg.api_key:
            source = pcfg.api_key_env or f"LLM_{pname.upper()}_API_KEY"
            errors.append(f"Provider {pname!r}: no API key (set {source})")
        if not pcfg.default_model:
            warnings.append(
                f"Provider {pname!r}: no default_model, every request must name a model"
            )

    # 3. Dry-run through the dispatcher with a MockProvider
    target = provider or config.default_provider
    if target not in config.providers:
        errors.append(f"Provider {target!r} is not configured")
        return errors, warnings
    try:
        _dry_run(config, target)
    except Exception as exc:
        errors.append(f"Dry-run failed for provider {target!r}: {exc}")

    return errors, warnings


def _dry_run(config, target: str) -> None:
    from prompt_dispatch.dispatcher import RequestDispatcher
    from prompt_dispatch.models import Request
    from prompt_dispatch.providers.mock import MockProvider

    async def run() -> None:
        dispatcher = RequestDispatcher(
            {target: config.providers[target].profile()},
            {target: MockProvider()},
        )
        try:
            responses = await dispatcher.send_requests(
                [Request(id="doctor", provider_id=target, prompt="doctor dry-run")]
            )
        finally:
            await dispatcher.close()
        if responses["doctor"].error:
            raise RuntimeError(responses["doctor"].error)

    asyncio.run(run())


def get_template() -> str:
    """Return the contents of the bundled dispatch.example.yaml."""
    template_path = Path(__file__).parent / "templates" / "dispatch.example.yaml"
    return template_path.read_text()


def _run_doctor(args: argparse.Namespace) -> int:
    config_path = args.config
    provider = getattr(args, "provider", None)

    print("Prompt Dispatch Doctor")
    print(f"Config: {config_path}")
    print()

    errors, warnings = check_config(config_path, provider)

    for w in warnings:
        print(f"  ⚠  {w}")
    for e in errors:
        print(f"  ✗  {e}", file=sys.stderr)

    if not errors and not warnings:
        print("  ✓  All checks passed")
    elif not errors:
        print(f"\n  ✓  {len(warnings)} warning(s), no blocking errors")

    if errors:
        print(f"\nStatus: {len(errors)} error(s) found", file=sys.stderr)
        return 1

    return 0


def _run_template(_args: argparse.Namespace) -> int:
    print(get_template(), end="")
    return 0


def _run_send(args: argparse.Namespace) -> int:
    from prompt_dispatch.config import ConfigError, load_config
    from prompt_dispatch.dispatcher import RequestDispatcher
    from prompt_dispatch.models import Request

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Config invalid: {exc}", file=sys.stderr)
        return 1

    provider = args.provider or config.default_provider
    requests = [
        Request(id=str(i), provider_id=provider, prompt=prompt, model=args.model or "")
        for i, prompt in enumerate(args.prompts, start=1)
    ]

    async def run() -> int:
        failures = 0
        dispatcher = RequestDispatcher.from_config(config)
        try:
            async for event in dispatcher.stream_requests(requests):
                if event.error:
                    failures += 1
                print(json.dumps({
                    "request_id": event.request_id,
                    "content": event.content,
                    "error": event.error,
                }), flush=True)
        finally:
            await dispatcher.close()
        return 1 if failures else 0

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        return 130


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="prompt-dispatch",
        description="Prompt Dispatch CLI tools",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # doctor subcommand
    doctor_p = subparsers.add_parser(
        "doctor",
        help="Validate config file and environment; exit 0 if healthy",
    )
    doctor_p.add_argument(
        "--config",
        required=True,
        metavar="PATH",
        help="Path to config YAML",
    )
    doctor_p.add_argument(
        "--provider",
        metavar="NAME",
        help="Provider to dry-run (default: config.default_provider)",
    )
    doctor_p.set_defaults(func=_run_doctor)

    # template subcommand
    template_p = subparsers.add_parser(
        "template",
        help="Print example config YAML to stdout",
    )
    template_p.set_defaults(func=_run_template)

    # send subcommand
    send_p = subparsers.add_parser(
        "send",
        help="Dispatch prompts and print one JSON line per result",
    )
    send_p.add_argument(
        "--config",
        default=None,
        metavar="PATH",
        help="Path to config YAML (default: $LLM_CONFIG_PATH or config/llm-config.yaml)",
    )
    send_p.add_argument(
        "--provider",
        metavar="NAME",
        help="Target provider (default: config.default_provider)",
    )
    send_p.add_argument(
        "--model",
        metavar="MODEL",
        help="Model override (default: provider default_model)",
    )
    send_p.add_argument("prompts", nargs="+", metavar="PROMPT")
    send_p.set_defaults(func=_run_send)

    args = parser.parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
