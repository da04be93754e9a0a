import argparse
import json
import logging
import os
import signal
import sys
from typing import List, Optional

from .app import DB_BACKEND, Application
from .config import LOG_LEVELS, enforce_profile_requirements, parse_log_level
from .errors import AppError
from .rpc import RPC_HOST, RPC_PORT, RpcServer
from .wallet import Wallet

DEFAULT_DATA_DIR = os.getenv("BASEAPP_HOME", os.path.join(os.getcwd(), "baseapp_data"))
DEFAULT_LOG_LEVEL = os.getenv("BASEAPP_LOG_LEVEL", "info")

logger = logging.getLogger("baseapp")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=parse_log_level(level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def cmd_start(args: argparse.Namespace) -> int:
    enforce_profile_requirements()
    logger.info("Config directory %s", args.home)
    app = Application.open(args.home, backend=args.db_backend)
    server = RpcServer(app, args.host, args.port)

    def _shutdown(signum, frame) -> None:
        logger.info("Received shutdown signal, stopping all services...")
        server.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    server.start()
    try:
        while not server.wait(1.0):
            pass
    finally:
        app.close()
    if server.fatal_error is not None:
        logger.critical("exiting after fatal error: %s", server.fatal_error)
        return 1
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    with Application.open(args.home, backend=args.db_backend) as app:
        info = app.info()
    print(json.dumps({
        "last_block_height": info.last_block_height,
        "last_block_app_hash": info.last_block_app_hash.hex(),
        "version": info.version,
        "app_version": info.app_version,
    }, indent=2))
    return 0


def cmd_query(args: argparse.Namespace) -> int:
    with Application.open(args.home, backend=args.db_backend) as app:
        result = app.query(args.path, args.data.encode())
    if not result.ok:
        print(f"error (code {result.code}): {result.log}", file=sys.stderr)
        return 1
    print(result.value.decode("utf-8", errors="replace"))
    return 0


def cmd_keygen(args: argparse.Namespace) -> int:
    wallet = Wallet.create()
    wallet.save(args.wallet)
    print("Key created")
    print("Address:", wallet.address)
    print("Pubkey:", wallet.pub_key_bytes.hex())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="baseapp", description="Deterministic key/value application for an ABCI-style consensus engine")
    parser.add_argument("-d", "--home", default=DEFAULT_DATA_DIR, help="home directory for application data")
    parser.add_argument(
        "-l",
        "--log-level",
        default=DEFAULT_LOG_LEVEL,
        choices=LOG_LEVELS,
        help="log level for the application",
    )
    parser.add_argument("--db-backend", default=DB_BACKEND, choices=("sqlite", "memdb"))
    sub = parser.add_subparsers(dest="command", required=True)

    p_start = sub.add_parser("start", help="serve the protocol to a consensus engine")
    p_start.add_argument("--host", default=RPC_HOST)
    p_start.add_argument("--port", type=int, default=RPC_PORT)
    p_start.set_defaults(func=cmd_start)

    p_info = sub.add_parser("info", help="print the last committed height and app hash")
    p_info.set_defaults(func=cmd_info)

    p_query = sub.add_parser("query", help="query committed state")
    p_query.add_argument("data", help="key, prefix or address depending on path")
    p_query.add_argument("--path", default="/store")
    p_query.set_defaults(func=cmd_query)

    p_keygen = sub.add_parser("keygen", help="create a signing key for signed txs")
    p_keygen.add_argument("--wallet", required=True)
    p_keygen.set_defaults(func=cmd_keygen)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.func(args)
    except AppError as exc:
        logger.critical("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
