"""Companion Memory CLI: init, serve, and prune entry points.

Usage:
    companion-memory init               # FastEmbed (default, zero cloud)
    companion-memory init --openai      # OpenAI embeddings (prompts for key)
    companion-memory init --ollama      # Ollama local embeddings
    companion-memory serve              # Start the HTTP server
    companion-memory prune --days 30    # Remove stale, unimportant memories
"""

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

COMPANION_DIR = Path.home() / ".companion-memory"
CONFIG_FILE = COMPANION_DIR / "config.yaml"
ENV_FILE = COMPANION_DIR / ".env"

FASTEMBED_CONFIG_TEMPLATE = """\
# Companion Memory Configuration - FastEmbed (Zero Cloud)
# Local ONNX embeddings, no API keys, no external services.

embedding:
  provider: fastembed
  model: BAAI/bge-small-en-v1.5
  dimensions: 384

db:
  provider: {db_provider}
  path: {db_path}

pruning:
  enabled: true
  importance_floor: 0.7
  retention_days: 30

server:
  host: 127.0.0.1
  port: 18791
"""

OPENAI_CONFIG_TEMPLATE = """\
# Companion Memory Configuration - OpenAI Embeddings
# API key stored in ~/.companion-memory/.env (not here; keep configs safe to share)

embedding:
  provider: openai
  model: text-embedding-3-small
  dimensions: 300

db:
  provider: {db_provider}
  path: {db_path}

pruning:
  enabled: true
  importance_floor: 0.7
  retention_days: 30

server:
  host: 127.0.0.1
  port: 18791
"""

OLLAMA_CONFIG_TEMPLATE = """\
# Companion Memory Configuration - Ollama (Local Embeddings)

embedding:
  provider: openai          # Uses OpenAI-compatible API
  model: nomic-embed-text   # Run: ollama pull nomic-embed-text
  api_base: http://localhost:11434/v1
  dimensions: 768

db:
  provider: {db_provider}
  path: {db_path}

pruning:
  enabled: true
  importance_floor: 0.7
  retention_days: 30

server:
  host: 127.0.0.1
  port: 18791
"""


def _write_env_file(key: str, value: str) -> None:
    """Write or update a key in ~/.companion-memory/.env.

    The file is created with 600 permissions (owner-only read/write)
    so API keys stay out of config.yaml.
    """
    ENV_FILE.parent.mkdir(parents=True, exist_ok=True)

    existing: dict[str, str] = {}
    if ENV_FILE.exists():
        for line in ENV_FILE.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                k, _, v = line.partition("=")
                existing[k.strip()] = v.strip()

    existing[key] = value

    content = "# Companion Memory secrets - auto-generated, do not commit\n"
    for k, v in existing.items():
        content += f"{k}={v}\n"

    ENV_FILE.write_text(content)
    ENV_FILE.chmod(0o600)


def load_env_file() -> None:
    """Load ~/.companion-memory/.env into os.environ if it exists.

    Explicitly exported variables win over the file.
    """
    if not ENV_FILE.exists():
        return
    for line in ENV_FILE.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            k, _, v = line.partition("=")
            k, v = k.strip(), v.strip()
            if k not in os.environ:
                os.environ[k] = v


def _detect_provider(args: argparse.Namespace) -> str:
    if args.openai:
        return "openai"
    if args.ollama:
        return "ollama"
    return "fastembed"


def _prompt_api_key() -> str:
    """Prompt for an OpenAI API key, falling back to ``OPENAI_API_KEY`` without a TTY."""
    env_key = os.environ.get("OPENAI_API_KEY", "")
    if sys.stdin.isatty():
        prompt_msg = "Enter your OpenAI API key"
        if env_key:
            masked = env_key[:7] + "..." + env_key[-4:]
            prompt_msg += f" [{masked}]"
        prompt_msg += ": "
        user_input = input(prompt_msg).strip()
        if user_input:
            return user_input
        if env_key:
            return env_key
        print("No API key provided.")
        sys.exit(1)
    if env_key:
        return env_key
    print("--openai requires OPENAI_API_KEY (no TTY for prompt).")
    sys.exit(1)


def cmd_init(args: argparse.Namespace) -> int:
    """Write a starter config file."""
    db_provider = args.db
    db_path = str(COMPANION_DIR / "db")

    COMPANION_DIR.mkdir(parents=True, exist_ok=True)

    if CONFIG_FILE.exists() and not args.force:
        print(f"Config already exists: {CONFIG_FILE}")
        print("   Use --force to overwrite.")
        return 1

    provider = _detect_provider(args)
    if provider == "openai":
        api_key = _prompt_api_key()
        template = OPENAI_CONFIG_TEMPLATE
    elif provider == "ollama":
        template = OLLAMA_CONFIG_TEMPLATE
    else:
        template = FASTEMBED_CONFIG_TEMPLATE

    CONFIG_FILE.write_text(template.format(db_provider=db_provider, db_path=db_path))
    print(f"Config written: {CONFIG_FILE}")

    if provider == "openai":
        _write_env_file("OPENAI_API_KEY", api_key)
        print(f"API key saved to {ENV_FILE} (600 permissions)")
    elif provider == "fastembed":
        print("FastEmbed: first run downloads a ~130MB model, then it's instant.")
    else:
        print("Ollama: make sure it is running and `ollama pull nomic-embed-text` was done.")

    print()
    print("Start the server:")
    print("   companion-memory serve")
    return 0


def _load_config(config_path):
    from .server.config import CompanionMemoryConfig

    if config_path:
        return CompanionMemoryConfig.from_file(config_path)
    return CompanionMemoryConfig.from_env()


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the HTTP server."""
    # Load .env before config so API keys are in os.environ
    load_env_file()

    from .server.app import run_server

    run_server(
        config=_load_config(args.config),
        host=args.host,
        port=args.port,
        log_level=args.log_level or "info",
    )


async def _run_prune(config, days: int, protect_important: bool) -> dict:
    from .services import create_memory_store
    from .services.pruning import retention_cutoff

    async with create_memory_store(config) as store:
        report = await store.prune_old_memories(
            retention_cutoff(days),
            except_important_ones=protect_important,
            deadline=config.pruning.deadline_seconds,
        )
    return report.to_dict()


def cmd_prune(args: argparse.Namespace) -> int:
    """Run one prune pass and print the report as JSON."""
    load_env_file()
    config = _load_config(args.config)

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Config error: {error}", file=sys.stderr)
        return 1

    days = args.days if args.days is not None else config.pruning.retention_days
    report = asyncio.run(_run_prune(config, days, protect_important=not args.all))
    print(json.dumps(report, indent=2))
    return 1 if report["failed"] else 0


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="companion-memory",
        description="Companion Memory - long-term memory for an AI companion",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init
    init_parser = subparsers.add_parser("init", help="Write a starter config file")
    provider_group = init_parser.add_mutually_exclusive_group()
    provider_group.add_argument(
        "--fastembed", action="store_true",
        help="Use FastEmbed local embeddings (default, no API key needed)")
    provider_group.add_argument(
        "--openai", action="store_true",
        help="Use OpenAI embeddings (prompts for API key)")
    provider_group.add_argument(
        "--ollama", action="store_true",
        help="Use Ollama local embeddings (no API key needed)")
    init_parser.add_argument("--db", type=str, default="lancedb",
                             choices=["lancedb", "sqlite"],
                             help="Persistent backend (default: lancedb)")
    init_parser.add_argument("--force", action="store_true",
                             help="Overwrite existing config")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument("--config", "-c", type=str, default=None)
    serve_parser.add_argument("--log-level", type=str, default=None,
                              choices=["debug", "info", "warning", "error"])

    # prune
    prune_parser = subparsers.add_parser("prune", help="Remove stale memories now")
    prune_parser.add_argument("--days", type=int, default=None,
                              help="Remove memories older than this many days "
                                   "(default: pruning.retention_days)")
    prune_parser.add_argument("--all", action="store_true",
                              help="Also remove important memories")
    prune_parser.add_argument("--config", "-c", type=str, default=None)

    args = parser.parse_args()

    if args.command == "init":
        sys.exit(cmd_init(args))
    elif args.command == "serve":
        cmd_serve(args)
    elif args.command == "prune":
        sys.exit(cmd_prune(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
