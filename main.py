"""Entry point for the document search server."""

import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Document search server")
    parser.add_argument(
        "--storage-dir",
        default=None,
        help="Directory for uploaded files. Overrides STORAGE_DIR env var.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level. Overrides LOG_LEVEL env var.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    args = parser.parse_args()

    if args.storage_dir:
        os.environ["STORAGE_DIR"] = args.storage_dir
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level

    from doc_search_server.server import app

    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
