"""CLI entry point for K11."""

import asyncio
import argparse


def main():
    parser = argparse.ArgumentParser(description="K11 data API server")
    parser.add_argument("--config", default=None, help="Path to config file")
    parser.add_argument("--host", default=None, help="Override server.host")
    parser.add_argument("--port", type=int, default=None, help="Override server.port")
    args = parser.parse_args()

    from k11.app import K11App
    from k11.config import load_config

    config = load_config(args.config)
    if args.host:
        config.server.host = args.host
    if args.port is not None:
        config.server.port = args.port

    app = K11App(config=config)
    asyncio.run(app.run())


if __name__ == "__main__":
    main()
