"""
opfactory: OperationFactory lifecycle tooling

Usage:
    python main.py node                       # Dev chain JSON-RPC on DEVCHAIN_HOST:DEVCHAIN_PORT
    python main.py node --port 8545
    python main.py scenario                   # Lifecycle check against an in-process dev chain
    python main.py scenario --rpc http://127.0.0.1:8545
    python main.py scenario --rpc $RPC_URL --artifacts-dir artifacts/

Signers for `scenario --rpc`: OWNER_PRIVATE_KEY + OPERATOR_PRIVATE_KEY if both
are set in .env, otherwise the node's first two unlocked accounts.
"""

import sys
import logging
import argparse
from pathlib import Path

import uvicorn
from web3 import Web3

from core.chain import connect
from core.config import Settings, configure_logging
from core.scenario import run_lifecycle
from core.signer import Signer, get_signers

logger = logging.getLogger("opfactory.main")


# ============================================================
# COMMANDS
# ============================================================

def cmd_node(settings: Settings, args: argparse.Namespace) -> int:
    from api.server import create_app
    from devchain.chain import DevChain

    chain = DevChain(chain_id=args.chain_id or settings.devchain_chain_id)
    app = create_app(chain)

    host = args.host or settings.devchain_host
    port = args.port or settings.devchain_port
    logger.info(f"Starting dev chain on http://{host}:{port} (chain_id={chain.chain_id})")
    for i, (address, key) in enumerate(zip(chain.accounts, chain.private_keys)):
        # Keys go to stdout, not the (masked) log
        print(f"  Account #{i}: {address}  key={key}")

    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    return 0


def cmd_scenario(settings: Settings, args: argparse.Namespace) -> int:
    if args.rpc:
        try:
            w3 = connect(args.rpc)
        except ConnectionError as e:
            logger.error(str(e))
            return 2
    else:
        from devchain.provider import DevChainProvider
        w3 = Web3(DevChainProvider())
        logger.info("Using in-process dev chain")

    signers = _scenario_signers(w3, settings)
    if len(signers) < 2:
        logger.error("Need two signers (owner + operator): set OWNER_PRIVATE_KEY and OPERATOR_PRIVATE_KEY")
        return 2
    owner, operator = signers[:2]
    logger.info(f"Owner: {owner.address} | Operator: {operator.address}")

    artifacts_dir = Path(args.artifacts_dir) if args.artifacts_dir else settings.artifacts_dir
    report = run_lifecycle(w3, owner, operator, artifacts_dir=artifacts_dir)

    print("=" * 60)
    print("  OPERATION FACTORY LIFECYCLE")
    print("=" * 60)
    print(f"  Template:  {report.operation_address or '-'}")
    print(f"  Factory:   {report.factory_address or '-'}")
    print(f"  Instance:  {report.instance_address or '-'}")
    print(report.summary())
    return 0 if report.passed else 1


def _scenario_signers(w3: Web3, settings: Settings) -> list[Signer]:
    keys = settings.private_keys()
    if len(keys) == 2:
        return get_signers(w3, keys)
    if keys:
        logger.warning("Only one private key configured, falling back to node accounts")
    return get_signers(w3)


# ============================================================
# ENTRY POINT
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="OperationFactory lifecycle tooling")
    sub = parser.add_subparsers(dest="command", required=True)

    node = sub.add_parser("node", help="Run the dev chain JSON-RPC server")
    node.add_argument("--host", default=None, help="Bind host (default: DEVCHAIN_HOST)")
    node.add_argument("--port", type=int, default=None, help="Bind port (default: DEVCHAIN_PORT)")
    node.add_argument("--chain-id", type=int, default=None, help="Chain id (default: DEVCHAIN_CHAIN_ID)")

    scenario = sub.add_parser("scenario", help="Deploy + build once and check every property")
    scenario.add_argument("--rpc", default=None, help="JSON-RPC URL (default: in-process dev chain)")
    scenario.add_argument("--artifacts-dir", default=None, help="Compiled artifacts (required off the dev chain)")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.from_env()
    except ValueError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        return 2
    configure_logging(settings.log_level)

    if args.command == "node":
        return cmd_node(settings, args)
    return cmd_scenario(settings, args)


if __name__ == "__main__":
    sys.exit(main())
