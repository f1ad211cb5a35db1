"""Command-line interface for the digital business card service."""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

PROJECT_ROOT = Path(__file__).resolve().parent
VENV_DIRNAME = ".venv"


def _project_interpreter(root: Path = PROJECT_ROOT) -> Optional[Path]:
    """Return the interpreter of the project's ``.venv`` if one has been created."""

    venv_dir = root / VENV_DIRNAME
    for relative in ("bin/python3", "bin/python", "Scripts/python.exe"):
        candidate = venv_dir / relative
        if candidate.is_file():
            return candidate
    return None


def _ensure_project_interpreter() -> None:
    """Restart ``main.py`` under the project virtualenv when invoked with a system Python."""

    if sys.prefix != getattr(sys, "base_prefix", sys.prefix):
        return
    interpreter = _project_interpreter()
    if interpreter is None:
        return
    script = str(Path(__file__).resolve())
    os.execv(str(interpreter), [str(interpreter), script, *sys.argv[1:]])


if __name__ == "__main__":
    _ensure_project_interpreter()

from bizcards.config import SiteConfig, load_site_config, resolve_config_path
from bizcards.database import Database, resolve_database_path
from bizcards.errors import DeploymentError

logger = logging.getLogger("bizcards.main")

KNOWN_COMMANDS = {"serve", "init-db", "deploy", "preview"}


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Digital business card management utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP admin API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=5000,
        help="Port for the HTTP API (default: 5000)",
    )

    subparsers.add_parser("deploy", help="Generate the site and publish it once")
    subparsers.add_parser("preview", help="Show the files a deployment would produce")

    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in KNOWN_COMMANDS:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database() -> Database:
    db_path = resolve_database_path(os.getenv("BIZCARDS_DB_PATH"))
    database = Database(db_path)
    database.initialize()
    logger.info("Database initialised at %s", db_path)
    return database


def _load_site_config() -> SiteConfig:
    config_path = resolve_config_path(os.getenv("BIZCARDS_CONFIG"))
    return load_site_config(config_path)


def _serve(*, database: Database, site_config: SiteConfig, host: str, port: int) -> None:
    from bizcards.api import create_app
    import uvicorn

    logger.info("Starting business card API on http://%s:%s", host, port)

    app = create_app(database=database, site_config=site_config)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _deploy(database: Database, site_config: SiteConfig) -> int:
    from bizcards.deployments import DeploymentPipeline

    pipeline = DeploymentPipeline(database, database, site_config)
    try:
        outcome = pipeline.run()
    except DeploymentError as exc:
        print(f"Deployment failed during {exc.phase}: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(outcome.to_dict(), indent=2, ensure_ascii=False))
    return 0


def _preview(database: Database, site_config: SiteConfig) -> int:
    from bizcards.deployments import DeploymentPipeline

    pipeline = DeploymentPipeline(database, database, site_config)
    print(json.dumps(pipeline.preview(), indent=2, ensure_ascii=False))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    database = _initialise_database()

    if args.command == "init-db":
        print("Database initialisation complete.")
        return 0

    site_config = _load_site_config()

    if args.command == "serve":
        _serve(database=database, site_config=site_config, host=args.host, port=args.port)
        return 0
    if args.command == "deploy":
        return _deploy(database, site_config)
    if args.command == "preview":
        return _preview(database, site_config)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
