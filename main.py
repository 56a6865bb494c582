import argparse
import json
import logging
import sys
from pathlib import Path

from catalog_store import CatalogStore
from config import Config, load_config
from folder_analysis import analyze_folders
from sinks import GAMES_DIR
from syncer import run_export, run_network_sync
from telemetry import init_telemetry, shutdown_telemetry


def setup_logging(config: Config) -> None:
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    log_format = "%(asctime)s %(levelname)s %(message)s"
    if config.log_file:
        logging.basicConfig(level=level, filename=config.log_file, filemode="a", format=log_format)
        logging.getLogger().addHandler(logging.StreamHandler())
    else:
        logging.basicConfig(level=level, format=log_format)
    for noisy in ("urllib3", "requests"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Game catalog export and sync")
    parser.add_argument("--tenant", required=True, help="Tenant (user) identifier")
    parser.add_argument("--token", default="", help="Token for the full export endpoint")
    commands = parser.add_subparsers(dest="command", required=True)

    export = commands.add_parser("export", help="Build a ZIP archive of the catalog")
    export.add_argument("--output", required=True, help="Path of the ZIP file to write")
    export.add_argument("--full", action="store_true", help="Ignore the export cache")

    sync = commands.add_parser("sync", help="Mirror the catalog into CATALOG_SYNC_PATH")
    sync.add_argument("--full", action="store_true", help="Ignore the export cache")

    commands.add_parser("analyze", help="Report orphan and duplicate game folders")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config()
    setup_logging(config)
    init_telemetry()

    try:
        with CatalogStore(config.db_path) as store:
            if args.command == "export":
                data, stats = run_export(config, store, args.tenant, args.token, args.full)
                if stats.success:
                    Path(args.output).write_bytes(data)
                    logging.info("Archive written to %s (%s bytes)", args.output, len(data))
                print(json.dumps(stats.as_dict(), ensure_ascii=False, indent=2))
                return 0 if stats.success else 1

            if args.command == "sync":
                stats = run_network_sync(config, store, args.tenant, args.token, args.full)
                print(json.dumps(stats.as_dict(), ensure_ascii=False, indent=2))
                return 0 if stats.success else 1

            games_root = Path(config.sync_path or ".") / args.tenant / GAMES_DIR
            result = analyze_folders(store, args.tenant, games_root)
            print(json.dumps(result.as_dict(), ensure_ascii=False, indent=2))
            return 0
    finally:
        shutdown_telemetry()


if __name__ == "__main__":
    sys.exit(main())
