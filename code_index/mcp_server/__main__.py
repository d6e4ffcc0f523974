import argparse
import logging
import sys
import asyncio
from pathlib import Path
from code_index.mcp_server.server import server
from code_index.core.config import load_config

def main():
    parser = argparse.ArgumentParser(
        description="CodeIndex MCP Server - Incremental semantic code search and dependency analysis",
        epilog="Example: python -m code_index.mcp_server --config custom.yaml"
    )
    parser.add_argument(
        "--config",
        help="Path to configuration YAML file (default: codeindex.config.yaml)"
    )
    parser.add_argument(
        "--project-root",
        help="Project directory to index (default: project_root from config, else current directory)"
    )
    parser.add_argument(
        "--no-watch",
        dest="watch_enabled",
        action="store_false",
        default=None,
        help="Index once at startup without watching for changes"
    )

    args = parser.parse_args()

    # We pass args as dict, filtering out None
    cli_args = {k: v for k, v in vars(args).items() if v is not None and k != "config"}
    config = load_config(config_path=args.config, cli_args=cli_args)
    if not config.project_root:
        config.project_root = str(Path.cwd())

    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    # The orchestrator accepts a plain dict as well as the model
    server.config = config.model_dump()

    logging.info(f"Server starting with config: {server.config}")
    logging.info("Server running on stdio")
    try:
        asyncio.run(server.run_stdio_async())
    except KeyboardInterrupt:
        logging.info("Server stopped")

if __name__ == "__main__":
    main()
